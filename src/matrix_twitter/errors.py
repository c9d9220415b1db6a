"""Error taxonomy shared by the bridge components."""


class BridgeError(Exception):
    """Base class for errors raised by the bridge."""
    pass


class ValidationError(BridgeError):
    """Malformed room id, twitter id, hashtag or screen name."""
    pass


class AuthError(BridgeError):
    """Missing, expired or revoked credentials."""
    pass


class RemoteUnavailable(BridgeError):
    """The remote platform timed out or returned a server error."""
    pass


class ChainResolutionError(BridgeError):
    """A reply chain could not be resolved."""
    pass


class LifecycleError(BridgeError):
    """A timer was stopped without having been started."""
    pass


class OutboundRejected(BridgeError):
    """An outgoing message was refused before anything was posted.

    Carries two texts: ``notify`` is shown to the user in the room, ``error``
    is the technical reason written to the log.
    """

    default_notify = "Your message could not be sent to Twitter."

    def __init__(self, error: str, notify: str | None = None):
        self.error = error
        self.notify = notify or self.default_notify
        super().__init__(error)


class NotLinkedError(OutboundRejected):
    """The sender has no linked Twitter account."""

    default_notify = (
        "You need to link your Twitter account before you can send tweets. "
        "Talk to the bridge bot to link one."
    )


class ReadOnlyAccountError(OutboundRejected):
    """The linked account only has read access."""

    default_notify = "Your account doesn't have the correct permission level to send tweets."


class ContextError(OutboundRejected):
    """The message does not address any hashtag or user the rooms are bound to."""

    default_notify = (
        "Your message did not mention the user or hashtag this room is bridged to, "
        "so it was not tweeted."
    )


class UnsupportedContentError(OutboundRejected):
    """The message type cannot be posted."""

    default_notify = "That kind of message is not supported yet."


class MessageTooLongError(OutboundRejected):
    """The message does not fit in the maximum tweet chain."""

    default_notify = "Your message is too long to be tweeted."
