"""
SQLite data models (plain dataclasses) for sttqueue.
"""

from dataclasses import dataclass, asdict
from typing import Optional


@dataclass
class Job:
    id: str                          # UUID
    source_type: str                 # "upload" | "url"
    max_attempts: int
    file_path: str = ""
    status: str = "pending"
    source_url: Optional[str] = None
    original_name: Optional[str] = None
    wav_path: Optional[str] = None
    language: Optional[str] = None
    result_text: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)
