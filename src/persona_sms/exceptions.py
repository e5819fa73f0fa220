"""
Exception hierarchy for persona_sms.

Every error raised by the package derives from PersonaSMSError so callers at
the HTTP and worker boundaries can catch one type.
"""


class PersonaSMSError(Exception):
    """Base exception for persona_sms"""

    pass


class ConfigError(PersonaSMSError):
    """Invalid or unreadable configuration"""

    pass


class StorageError(PersonaSMSError):
    """Persistence failure"""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class MemoryInitializationError(PersonaSMSError):
    """Memory bootstrap for a (persona, user) pair failed"""

    def __init__(self, persona_id: str, user_id: str, reason: str):
        self.persona_id = persona_id
        self.user_id = user_id
        self.reason = reason
        super().__init__(
            f"Memory initialization failed for {persona_id}:{user_id}: {reason}"
        )


class HotMemoryMissingError(PersonaSMSError):
    """No hot memory stored for a (persona, user) pair"""

    def __init__(self, persona_id: str, user_id: str):
        self.persona_id = persona_id
        self.user_id = user_id
        super().__init__(f"Hot memory not found: {persona_id}:{user_id}")


class InvalidCoreFieldError(PersonaSMSError):
    """Unknown core identity field name"""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Unrecognized core identity field: '{field}'")


class StatusConsistencyError(PersonaSMSError):
    """A write would leave status and subscription_status inconsistent"""

    def __init__(self, status: str, subscription_status: str):
        self.status = status
        self.subscription_status = subscription_status
        super().__init__(
            f"status={status!r} is inconsistent with "
            f"subscription_status={subscription_status!r}"
        )


class CollaboratorError(PersonaSMSError):
    """An external collaborator call failed"""

    pass


class GenerationError(CollaboratorError):
    """Reply generation failed"""

    pass


class DeliveryError(CollaboratorError):
    """Outbound message delivery failed"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class PayloadError(PersonaSMSError):
    """Malformed inbound webhook payload"""

    pass
