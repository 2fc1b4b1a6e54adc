import datetime
import secrets
import string


class IdGenerator:
    """Generate prefixed identifiers for templates and sessions."""

    TEMPLATE_PREFIX: str = "tpl"
    SESSION_PREFIX: str = "ses"
    SUFFIX_ALPHABET: str = string.ascii_lowercase + string.digits
    SUFFIX_LENGTH: int = 6

    @classmethod
    def _suffix(cls, length: int | None = None) -> str:
        size = length or cls.SUFFIX_LENGTH
        return "".join(secrets.choice(cls.SUFFIX_ALPHABET) for _ in range(size))

    @classmethod
    def template_id(cls) -> str:
        """Return a new ``tpl_`` identifier with a random suffix."""
        return f"{cls.TEMPLATE_PREFIX}_{cls._suffix(10)}"

    @classmethod
    def session_id(cls, now: datetime.datetime | None = None) -> str:
        """Return ``ses_yyyyMMdd_HHmmss_xxxxxx`` for ``now`` in local time.

        Lexicographic order of the ids roughly follows creation order. The
        authoritative ordering is the ``started_at`` column.
        """
        moment = now or datetime.datetime.now(datetime.timezone.utc)
        if moment.tzinfo is not None:
            moment = moment.astimezone()
        stamp = moment.strftime("%Y%m%d_%H%M%S")
        return f"{cls.SESSION_PREFIX}_{stamp}_{cls._suffix()}"


class TimeTools:
    """Timestamp helpers shared by the store and the statistics service."""

    @staticmethod
    def utcnow() -> datetime.datetime:
        return datetime.datetime.now(datetime.timezone.utc)

    @staticmethod
    def to_storage(ts: datetime.datetime) -> str:
        """Return ``ts`` as a UTC ISO string with fixed microsecond precision."""
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=datetime.timezone.utc)
        return ts.astimezone(datetime.timezone.utc).isoformat(
            timespec="microseconds"
        )

    @staticmethod
    def from_storage(value: str | None) -> datetime.datetime | None:
        if value is None:
            return None
        dt = datetime.datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        return dt
