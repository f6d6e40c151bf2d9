"""
Application state: per-request view of the running app.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class AppState:
    """State resolved from the environment and the session."""
    data_root: Path
    acting_user_id: Optional[str] = None
