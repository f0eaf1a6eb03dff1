"""Exceptions raised by the federation core."""


class FederationError(Exception):
    """Error during federation operations."""
    pass


class ActorNotFound(FederationError):
    """The local username does not resolve to a user."""
    pass


class InvalidActivity(FederationError):
    """The body is not JSON or lacks the required top-level fields."""
    pass


class UnsupportedActivityType(FederationError):
    """A local actor published an activity type the outbox cannot honor."""

    def __init__(self, activity_type: str):
        super().__init__(f"Unsupported activity type: {activity_type}")
        self.activity_type = activity_type


class HandlerFailure(FederationError):
    """An inbox side-effect handler raised; logged, never surfaced."""

    def __init__(self, activity_id: str, activity_type: str, cause: Exception):
        super().__init__(f"{activity_type} handler failed for {activity_id}: {cause}")
        self.activity_id = activity_id
        self.activity_type = activity_type
        self.cause = cause


class SignatureInvalid(FederationError):
    """The HTTP signature on an inbox delivery did not verify."""
    pass
