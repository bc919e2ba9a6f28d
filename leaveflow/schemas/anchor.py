from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel


class AnchorEntry(BaseModel):
    """Content-addressed audit record; written once, looked up by reference."""

    reference: str
    subject_hash: str
    metadata_hash: str
    event: str
    metadata: Dict[str, Any] = {}
    external_reference: Optional[str] = None
    storage_reference: Optional[str] = None
    status: str = "anchored"  # anchored | pending
    created_at: datetime
