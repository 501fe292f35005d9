"""WS protocol contracts — error and close codes."""

# Error codes carried in `error` envelopes
INVALID_MESSAGE = "INVALID_MESSAGE"
UNKNOWN_MESSAGE_TYPE = "UNKNOWN_MESSAGE_TYPE"
VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
MAX_SESSIONS_EXCEEDED = "MAX_SESSIONS_EXCEEDED"

# Close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
