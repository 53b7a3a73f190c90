"""
Upload Resolution Module

Loan applications may carry raw images (bytes or ``data:image/...`` URIs).
They are handed to an ImageStore, which returns a stable reference. The
loan keeps only that reference and never inspects image content.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Union
import logging


logger = logging.getLogger("loan_desk.uploads")

UploadPayload = Union[bytes, str]


class ImageStore(ABC):
    """File/image storage collaborator"""

    @abstractmethod
    def store(self, payload: UploadPayload, field_name: str) -> Optional[str]:
        """
        Persist an upload and return its reference (path or URL)

        Returns:
            Reference string, or None if the upload could not be stored
        """
        pass


def is_raw_upload(value: Any) -> bool:
    """Bytes and data URIs need storing; any other string is already a reference"""
    return isinstance(value, (bytes, bytearray)) or (
        isinstance(value, str) and value.startswith("data:")
    )


def resolve_upload(store: Optional[ImageStore], field_name: str, value: Any) -> Optional[str]:
    """Turn one upload into a reference, or None when it cannot be stored"""
    if value is None or value == "":
        return None
    if not is_raw_upload(value):
        return str(value)
    if store is None:
        logger.warning(f"No image store configured, dropping upload for {field_name}")
        return None
    try:
        reference = store.store(value, field_name)
    except Exception as e:
        logger.warning(f"Image store failed for {field_name}: {e}")
        return None
    if not reference:
        logger.warning(f"Image store returned no reference for {field_name}")
        return None
    return reference

