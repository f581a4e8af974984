"""Field rules for article create / update, checked before the store is touched."""
from datetime import datetime, timezone

from bulletin.exceptions import FieldError, ValidationError
from bulletin.schemas import ArticleWrite

TITLE_MIN_LENGTH = 2
TITLE_MAX_LENGTH = 30


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def article_errors(data: ArticleWrite, now: datetime) -> list[FieldError]:
    errors: list[FieldError] = []

    title = data.title
    if title is None or not title.strip():
        errors.append(FieldError("title", "title.empty", "Title is required."))
    elif not TITLE_MIN_LENGTH <= len(title) <= TITLE_MAX_LENGTH:
        errors.append(FieldError(
            "title",
            "title.size",
            f"Title must be between {TITLE_MIN_LENGTH} and {TITLE_MAX_LENGTH} characters.",
        ))

    if data.content is None or not data.content.strip():
        errors.append(FieldError("content", "content.empty", "Content is required."))

    start, end = as_utc(data.start_date), as_utc(data.end_date)
    if start is not None and end is not None and start > end:
        errors.append(FieldError(
            "start_date", "startDate.invalid", "Start date cannot be after the end date."
        ))
    if end is not None and end < as_utc(now):
        errors.append(FieldError(
            "end_date", "endDate.past", "End date must not be in the past."
        ))
    return errors


def validate_article(data: ArticleWrite, now: datetime | None = None) -> None:
    """Raise ``ValidationError`` listing every rule *data* breaks."""
    errors = article_errors(data, now or datetime.now(timezone.utc))
    if errors:
        raise ValidationError(errors)
