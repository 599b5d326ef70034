# rasp_parser/core/errors.py
import json
import traceback
from typing import Any, Dict, List, Optional


class RaspError(Exception):
    """
    Base exception for the parser pipeline.

    Every error can carry a context bag (stage, url, parser, hash, flags...)
    that is rendered together with the message when the error is surfaced.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context or {})

    def with_context(self, **kwargs: Any) -> "RaspError":
        """Merges extra keys into the context bag (existing keys win) and returns self."""
        for key, value in kwargs.items():
            self.context.setdefault(key, value)
        return self


class FetchError(RaspError):
    """Network fetch failed after exhausting retries."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_exception: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code
        self.original_exception = original_exception


class StructureError(RaspError):
    """Page or table structure is not what the parser expects."""


class LessonParseError(RaspError):
    """A lesson cell has text but no parseable entries (strict mode)."""


class ValidationFailedError(RaspError):
    """Parsed entities failed structural validation."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.errors = list(errors or [])


class QuarantineError(RaspError):
    """Parse result rejected for having too few lessons."""


class WeekJumpError(RaspError):
    """Maximum published week advanced further than expected."""


class EmptyTimetableError(RaspError):
    """A cycle finished with at least one empty timetable."""


def format_error(error: BaseException) -> str:
    """
    Renders an error for an outgoing error event.

    Args:
        error: The exception to render.

    Returns:
        The formatted traceback (or the message if there is none) followed by
        a `context:` line with the JSON encoded context bag when present.
    """
    if error.__traceback__ is not None:
        text = "".join(traceback.format_exception(type(error), error, error.__traceback__)).rstrip()
    else:
        text = f"{type(error).__name__}: {error}"

    context = getattr(error, "context", None)
    if context:
        text += "\ncontext: " + json.dumps(context, ensure_ascii=False, default=str)
    return text
