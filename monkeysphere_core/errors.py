"""
monkeysphere_core.errors
------------------------
Exception taxonomy. Policy rejections are results, not exceptions.
"""


class MonkeysphereError(Exception):
    pass


class PacketFormatError(MonkeysphereError):
    """Malformed or unsupported OpenPGP material."""

    def __init__(self, message: str, tag=None, offset=None):
        context = []
        if tag is not None:
            context.append(f"tag={int(tag)}")
        if offset is not None:
            context.append(f"offset={offset}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)
        self.tag = tag
        self.offset = offset


class NoMatchingKeyError(MonkeysphereError):
    def __init__(self, message: str = "no matching key"):
        super().__init__(message)


class NoPrimaryKeysError(MonkeysphereError):
    def __init__(self, message: str = "no primary keys found"):
        super().__init__(message)


class AmbiguousKeyError(MonkeysphereError):
    pass


class InvalidIdentityError(MonkeysphereError, ValueError):
    pass


class PermissionCheckError(MonkeysphereError):
    pass


class KeyringError(MonkeysphereError):
    pass


class KeyserverError(MonkeysphereError):
    pass


class KeyserverTransientError(KeyserverError):
    pass


class KeyserverPermanentError(KeyserverError):
    pass


class AgentError(MonkeysphereError):
    pass
