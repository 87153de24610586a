class TaskpilotError(Exception):
    """Base exception for all Taskpilot errors."""


class CapabilityError(TaskpilotError):
    """An external capability (completion, embedding, search) call failed."""

    category = "capability_unreachable"


class CapabilityUnreachableError(CapabilityError):
    def __init__(self, capability: str, detail: str) -> None:
        self.capability = capability
        self.detail = detail
        super().__init__(f"{capability} unreachable: {detail}")


class CapabilityTimeoutError(CapabilityUnreachableError):
    def __init__(self, capability: str, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(capability, f"timed out after {seconds}s")


class CapabilityMalformedResponseError(CapabilityError):
    category = "malformed_response"

    def __init__(self, capability: str, detail: str) -> None:
        self.capability = capability
        self.detail = detail
        super().__init__(f"{capability} returned an unusable response: {detail}")


class ContextOverwriteError(TaskpilotError):
    def __init__(self, step: str, keys: list[str]) -> None:
        self.step = step
        self.keys = keys
        super().__init__(f"Step '{step}' tried to overwrite context keys: {', '.join(keys)}")


class UserNotFoundError(TaskpilotError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class UnsupportedMediaError(TaskpilotError):
    def __init__(self, media_type: str) -> None:
        self.media_type = media_type
        super().__init__(f"Unsupported media type: {media_type}")
