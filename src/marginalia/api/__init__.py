from .router import NO_REPLY, RequestRouter

__all__ = ["NO_REPLY", "RequestRouter"]
