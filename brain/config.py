import os
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    db_path: str = "brain.db"
    llm_timeout: Optional[float] = Field(30.0, gt=0)
    log_level: str = "INFO"
    accumulate_all_types: bool = False
    analysis_failure: Literal["halt", "skip"] = "halt"


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    load_dotenv()
    timeout = os.getenv("BRAIN_LLM_TIMEOUT")
    return Settings(
        db_path=os.getenv("BRAIN_DB_PATH", "brain.db"),
        llm_timeout=float(timeout) if timeout else 30.0,
        log_level=os.getenv("BRAIN_LOG_LEVEL", "INFO").upper(),
        accumulate_all_types=_flag(os.getenv("BRAIN_ACCUMULATE_ALL_TYPES")),
        analysis_failure=os.getenv("BRAIN_ANALYSIS_FAILURE", "halt"),
    )
