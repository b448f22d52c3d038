from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

# Load .env from repo root for local development and scripts.
ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=ENV_PATH)

class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, populate_by_name=True)
    currency_marker: str = Field(default="т", alias="CURRENCY_MARKER")
    operations_floor: int = Field(default=50, alias="OPERATIONS_FLOOR")
    anomalies_limit: int = Field(default=5, alias="ANOMALIES_LIMIT")
    day_anomalies_limit: int = Field(default=2, alias="DAY_ANOMALIES_LIMIT")
    top_expense_categories_limit: int = Field(default=5, alias="TOP_EXPENSE_CATEGORIES_LIMIT")
    upcoming_ops_limit: int = Field(default=5, alias="UPCOMING_OPS_LIMIT")
    upcoming_lines_per_day: int = Field(default=3, alias="UPCOMING_LINES_PER_DAY")
    audit_tolerance: float = Field(default=1.0, alias="AUDIT_TOLERANCE")
    audit_combination_max_items: int = Field(default=3, alias="AUDIT_COMBINATION_MAX_ITEMS")
    owner_draw_categories: str | None = Field(default=None, alias="OWNER_DRAW_CATEGORIES")
    offset_netting_categories: str | None = Field(default=None, alias="OFFSET_NETTING_CATEGORIES")

settings = Settings()
