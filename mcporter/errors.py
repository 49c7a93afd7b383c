"""Exception hierarchy for MCPorter."""


class MCPorterError(Exception):
    """Base class for every error raised by MCPorter."""


class ConfigError(MCPorterError):
    """Raised when server configuration is malformed or ambiguous."""


class UnknownServerError(MCPorterError):
    """Raised when a server name is not bound in the runtime."""

    def __init__(self, server: str, known=None):
        self.server = server
        message = f"Unknown server: {server}"
        if known:
            message += f" (configured: {', '.join(known)})"
        super().__init__(message)


class UnknownToolError(MCPorterError):
    """Raised when a server does not advertise the requested tool."""

    def __init__(self, server: str, tool: str, hint: str = ""):
        self.server = server
        self.tool = tool
        message = f"Unknown tool '{tool}' on server '{server}'"
        if hint:
            message += f". {hint}"
        super().__init__(message)


class SessionNotEstablishedError(MCPorterError):
    """Raised when a session-scoped server is called before its handshake."""

    def __init__(self, server: str, message: str = ""):
        self.server = server
        super().__init__(message or f"Server '{server}' requires a session handshake first")


class TransportError(MCPorterError):
    """Raised when the backing process or connection fails."""


class InvocationTimeoutError(TransportError):
    """Raised when a tool call is abandoned after its timeout."""
