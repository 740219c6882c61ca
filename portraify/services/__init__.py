from portraify.services.image_service import DecodeError
from portraify.services.storage_service import QuotaExceededError
from portraify.services.generation_service import RemoteGenerationError

__all__ = ["DecodeError", "QuotaExceededError", "RemoteGenerationError"]
