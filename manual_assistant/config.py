from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class Settings:
    """Configuration container for the Gemini model, storage, and session limits."""
    gemini_api_key: str
    gemini_model: str
    gemini_temperature: float
    gemini_max_output_tokens: int
    data_dir: Path
    database_url: str
    prompts_dir: Path
    max_sessions: int
    admin_user_id: str
    allowlist_url: str = ""
    allowlist_timeout: float = 10.0


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError. A missing
        GEMINI_API_KEY is not an error here; it surfaces at first AI use.
    If Removed: Nothing can start; every module reads its paths and
        limits from Settings.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve data and prompt paths, then build Settings.
    data_dir_env = os.getenv("DATA_DIR")
    data_dir = Path(data_dir_env) if data_dir_env else (BASE_DIR / "data").resolve()
    database_url = os.getenv("DATABASE_URL") or f"sqlite:///{data_dir / 'users.db'}"

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        gemini_temperature=float(os.getenv("GEMINI_TEMPERATURE", "0.2")),
        gemini_max_output_tokens=int(os.getenv("GEMINI_MAX_OUTPUT_TOKENS", "8192")),
        data_dir=data_dir,
        database_url=database_url,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        max_sessions=int(os.getenv("MAX_SESSIONS", "50")),
        admin_user_id=os.getenv("ADMIN_USER_ID", "admin"),
        allowlist_url=os.getenv("ALLOWLIST_URL", "").strip(),
        allowlist_timeout=float(os.getenv("ALLOWLIST_TIMEOUT", "10")),
    )
