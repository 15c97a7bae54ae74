class NotFoundError(Exception):
    """An id that does not resolve to a conversation, widget or category."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class CompletionError(Exception):
    """The completion service failed or returned output we could not use."""


class WidgetNotReadyError(Exception):
    """The widget exists but is not active, so its data cannot be updated yet."""
