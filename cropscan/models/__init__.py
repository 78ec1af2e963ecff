from cropscan.models.photo import PhotoRecord

__all__ = ["PhotoRecord"]
