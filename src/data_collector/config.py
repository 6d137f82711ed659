"""
Configuration settings for KRX listing and fundamentals collection
"""

import os
from dataclasses import dataclass, field
from typing import Dict
from dotenv import load_dotenv
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


@dataclass
class KrxValuationConfig:
    """Configuration for the KRX directory sync and valuation sweep"""

    # KRX market data endpoint
    KRX_DATA_URL: str = "http://data.krx.co.kr/comm/bldAttendant/getJsonData.cmd"
    KRX_LISTING_BLD: str = "dbms/MDC/STAT/standard/MDCSTAT01501"
    KRX_TREASURY_BLD: str = "dbms/MDC/STAT/standard/MDCSTAT03402"
    KRX_REFERER: str = "http://data.krx.co.kr/contents/MDC/MDI/mdiLoader/index.cmd"

    # Fundamentals pages
    INVESTOR_METRICS_URL: str = "https://navercomp.wisereport.co.kr/v2/company/c1030001.aspx?cmp_cd="
    COMPANY_OVERVIEW_URL: str = "https://navercomp.wisereport.co.kr/v2/company/c1010001.aspx?cmp_cd="
    MARKET_SUMMARY_URL: str = "https://finance.naver.com/item/main.naver?code="
    MARKET_SUMMARY_ENCODING: str = "euc-kr"

    # Timeouts (seconds)
    REQUEST_TIMEOUT: int = int(os.getenv("KRX_REQUEST_TIMEOUT", "30"))
    CONNECTION_TIMEOUT: int = int(os.getenv("KRX_CONNECTION_TIMEOUT", "10"))
    OPERATION_TIMEOUT: float = float(os.getenv("KRX_OPERATION_TIMEOUT", "10"))

    # Sweep pacing
    CONCURRENCY_WINDOW: int = int(os.getenv("KRX_CONCURRENCY_WINDOW", "10"))
    INTER_WINDOW_DELAY: float = float(os.getenv("KRX_INTER_WINDOW_DELAY", "0.5"))

    # Directory sanity
    MIN_PLAUSIBLE_INSTRUMENTS: int = int(os.getenv("KRX_MIN_PLAUSIBLE_INSTRUMENTS", "100"))
    ENRICH_TREASURY: bool = _env_bool("KRX_ENRICH_TREASURY", "1")

    # Job lock
    JOB_LOCK_NAME: str = "krx_instruments"
    JOB_LOCK_TTL_SECONDS: int = int(os.getenv("KRX_JOB_LOCK_TTL", "3600"))
    # A run that finds the lock held polls for this long before reporting skipped
    JOB_LOCK_WAIT_SECONDS: int = int(os.getenv("KRX_JOB_LOCK_WAIT", "1800"))
    JOB_LOCK_POLL_SECONDS: int = 30

    # Snapshot
    SNAPSHOT_PATH: str = os.getenv("KRX_SNAPSHOT_PATH", "data/all_safety_margin_results.json")
    DEFAULT_TOP_N: int = 50

    # Market calendar
    MARKET_TIMEZONE: str = "Asia/Seoul"
    TRADING_OPEN_HOUR: int = 9
    TRADING_CLOSE_HOUR: int = 17
    BUSINESS_DAY_CUTOFF_HOUR: int = 16

    # Cron minutes, staggered so no two jobs fire together
    DIRECTORY_CRON_MINUTE: int = 0
    FUNDAMENTALS_CRON_MINUTE: int = 30
    SWEEP_CRON_HOUR: int = 17
    SWEEP_CRON_MINUTE: int = 10

    # Database Configuration
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", "5432"))
    DB_NAME: str = os.getenv("DB_NAME", "stock_data")
    DB_USER: str = os.getenv("DB_USER", "postgres")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "")

    HEADERS: Dict[str, str] = field(default_factory=lambda: {
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        "Accept": "text/html,application/json,*/*;q=0.8",
        "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8,en;q=0.7",
    })

    @property
    def database_url(self) -> str:
        """Generate PostgreSQL connection URL"""
        return f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    def investor_metrics_url(self, code: str) -> str:
        return f"{self.INVESTOR_METRICS_URL}{code}"

    def company_overview_url(self, code: str) -> str:
        return f"{self.COMPANY_OVERVIEW_URL}{code}"

    def market_summary_url(self, code: str) -> str:
        return f"{self.MARKET_SUMMARY_URL}{code}"

    @classmethod
    def from_env(cls) -> "KrxValuationConfig":
        """Create configuration from environment variables"""
        return cls(
            REQUEST_TIMEOUT=int(os.getenv("KRX_REQUEST_TIMEOUT", "30")),
            CONNECTION_TIMEOUT=int(os.getenv("KRX_CONNECTION_TIMEOUT", "10")),
            OPERATION_TIMEOUT=float(os.getenv("KRX_OPERATION_TIMEOUT", "10")),
            CONCURRENCY_WINDOW=int(os.getenv("KRX_CONCURRENCY_WINDOW", "10")),
            INTER_WINDOW_DELAY=float(os.getenv("KRX_INTER_WINDOW_DELAY", "0.5")),
            MIN_PLAUSIBLE_INSTRUMENTS=int(os.getenv("KRX_MIN_PLAUSIBLE_INSTRUMENTS", "100")),
            ENRICH_TREASURY=_env_bool("KRX_ENRICH_TREASURY", "1"),
            JOB_LOCK_TTL_SECONDS=int(os.getenv("KRX_JOB_LOCK_TTL", "3600")),
            JOB_LOCK_WAIT_SECONDS=int(os.getenv("KRX_JOB_LOCK_WAIT", "1800")),
            SNAPSHOT_PATH=os.getenv("KRX_SNAPSHOT_PATH", "data/all_safety_margin_results.json"),
            DB_HOST=os.getenv("DB_HOST", "localhost"),
            DB_PORT=int(os.getenv("DB_PORT", "5432")),
            DB_NAME=os.getenv("DB_NAME", "stock_data"),
            DB_USER=os.getenv("DB_USER", "postgres"),
            DB_PASSWORD=os.getenv("DB_PASSWORD", ""),
        )


# Global configuration instance
krx_config = KrxValuationConfig.from_env()
