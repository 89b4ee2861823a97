import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        currency_symbol: str,
        openai_api_key: str,
        openai_model: str,
        openai_timeout_secs: float,
        llm_max_tool_rounds: int,
        bulk_text_max_length: int,
        insight_retention: int,
        insight_min_transactions: int,
        balance_audit_hour: int,
        balance_audit_repair: bool,
        host: str,
        port: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.currency_symbol = currency_symbol
        self.openai_api_key = openai_api_key
        self.openai_model = openai_model
        self.openai_timeout_secs = openai_timeout_secs
        self.llm_max_tool_rounds = llm_max_tool_rounds
        self.bulk_text_max_length = bulk_text_max_length
        self.insight_retention = insight_retention
        self.insight_min_transactions = insight_min_transactions
        self.balance_audit_hour = balance_audit_hour
        self.balance_audit_repair = balance_audit_repair
        self.host = host
        self.port = port


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("VERDANT_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "verdant.db"
    database_url = os.getenv("VERDANT_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("VERDANT_TIMEZONE", "UTC")
    currency_symbol = os.getenv("VERDANT_CURRENCY_SYMBOL", "₹")
    openai_api_key = os.getenv("VERDANT_OPENAI_API_KEY", os.getenv("OPENAI_API_KEY", ""))
    openai_model = os.getenv("VERDANT_OPENAI_MODEL", "gpt-4o-mini")
    openai_timeout_secs = float(os.getenv("VERDANT_OPENAI_TIMEOUT_SECS", "60"))
    llm_max_tool_rounds = int(os.getenv("VERDANT_LLM_MAX_TOOL_ROUNDS", "4"))
    bulk_text_max_length = int(os.getenv("VERDANT_BULK_TEXT_MAX_LENGTH", "100000"))
    insight_retention = int(os.getenv("VERDANT_INSIGHT_RETENTION", "7"))
    insight_min_transactions = int(os.getenv("VERDANT_INSIGHT_MIN_TRANSACTIONS", "5"))
    balance_audit_hour = int(os.getenv("VERDANT_BALANCE_AUDIT_HOUR", "3"))
    balance_audit_repair = _env_flag("VERDANT_BALANCE_AUDIT_REPAIR")
    host = os.getenv("VERDANT_HOST", "0.0.0.0")
    port = int(os.getenv("VERDANT_PORT", "8000"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        currency_symbol=currency_symbol,
        openai_api_key=openai_api_key,
        openai_model=openai_model,
        openai_timeout_secs=openai_timeout_secs,
        llm_max_tool_rounds=llm_max_tool_rounds,
        bulk_text_max_length=bulk_text_max_length,
        insight_retention=insight_retention,
        insight_min_transactions=insight_min_transactions,
        balance_audit_hour=balance_audit_hour,
        balance_audit_repair=balance_audit_repair,
        host=host,
        port=port,
    )
