from enum import StrEnum, auto

from relay.domain.errors import UnknownTagError


class JobStatus(StrEnum):
    PENDING = auto()    # Waiting for its scheduled time
    COMPLETED = auto()  # Executor reported success
    FAILED = auto()     # Executor failed, cancelled, or retry ceiling hit

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PENDING


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class Platform(StrEnum):
    YOUTUBE = auto()
    FACEBOOK = auto()
    TIKTOK = auto()

    @classmethod
    def parse(cls, value: str) -> "Platform":
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            raise UnknownTagError("platform", value, [p.value for p in cls])


# Actions each platform publisher understands.
PLATFORM_ACTIONS: dict[Platform, frozenset[str]] = {
    Platform.YOUTUBE: frozenset({"upload", "channel_info", "check_auth"}),
    Platform.FACEBOOK: frozenset({"post-page", "post-ig", "get-pages", "get-ig-account", "check_auth"}),
    Platform.TIKTOK: frozenset({"upload", "init", "upload-chunks", "status", "check_auth"}),
}


def parse_action(platform: Platform, action: str) -> str:
    allowed = PLATFORM_ACTIONS[platform]
    if action not in allowed:
        raise UnknownTagError(f"{platform} action", action, sorted(allowed))
    return action
