from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from psycopg.rows import dict_row

from src.data_collector.krx_valuation.data_models import (
    FundamentalSnapshot,
    Instrument,
    ItemStatus,
    MarketSegment,
    ValuationResult,
)
from src.database import connection as db_connection
from src.utils.logger import get_logger


logger = get_logger(__name__)


INSTRUMENTS_DDL = """
    CREATE TABLE IF NOT EXISTS public.krx_instruments (
        code VARCHAR(6) PRIMARY KEY,
        isu_cd VARCHAR(12) NULL,
        name VARCHAR(255) NOT NULL,
        market VARCHAR(10) NOT NULL,
        market_id VARCHAR(3) NOT NULL,
        dept VARCHAR(100) NULL,
        close NUMERIC(15, 2) NULL,
        change_code VARCHAR(1) NULL,
        changes NUMERIC(15, 2) NULL,
        change_ratio NUMERIC(10, 2) NULL,
        open NUMERIC(15, 2) NULL,
        high NUMERIC(15, 2) NULL,
        low NUMERIC(15, 2) NULL,
        volume BIGINT NULL,
        amount BIGINT NULL,
        marcap BIGINT NULL,
        shares_outstanding BIGINT NULL,
        treasury_shares BIGINT NULL,
        treasury_ratio NUMERIC(7, 2) NULL,
        eps NUMERIC(15, 2) NULL,
        bps NUMERIC(15, 2) NULL,
        roe NUMERIC(12, 2) NULL,
        per NUMERIC(12, 2) NULL,
        pbr NUMERIC(12, 2) NULL,
        dividend_yield NUMERIC(7, 2) NULL,
        intrinsic_value NUMERIC(15, 2) NULL,
        safety_margin NUMERIC(12, 2) NULL,
        valuation_status VARCHAR(20) NULL,
        valued_at TIMESTAMPTZ NULL,
        exclude BOOLEAN NOT NULL DEFAULT FALSE,
        favorite BOOLEAN NOT NULL DEFAULT FALSE,
        tags TEXT[] NOT NULL DEFAULT '{}',
        data_date DATE NULL,
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS idx_krx_instruments_market ON public.krx_instruments(market_id);
    CREATE INDEX IF NOT EXISTS idx_krx_instruments_margin ON public.krx_instruments(safety_margin DESC NULLS LAST);
"""

JOB_LOCKS_DDL = """
    CREATE TABLE IF NOT EXISTS public.job_locks (
        name VARCHAR(100) PRIMARY KEY,
        owner VARCHAR(64) NOT NULL,
        acquired_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    );
"""

# Baseline columns written by the directory sync. Fundamental and user-owned
# columns (exclude, favorite, tags) are never overwritten from here.
_BASELINE_COLUMNS = (
    "code", "isu_cd", "name", "market", "market_id", "dept",
    "close", "change_code", "changes", "change_ratio", "open", "high", "low",
    "volume", "amount", "marcap", "shares_outstanding",
    "treasury_shares", "treasury_ratio", "data_date",
)

_UPSERT_INSTRUMENT_SQL = f"""
    INSERT INTO public.krx_instruments ({", ".join(_BASELINE_COLUMNS)})
    VALUES ({", ".join(f"%({c})s" for c in _BASELINE_COLUMNS)})
    ON CONFLICT (code) DO UPDATE SET
        isu_cd = EXCLUDED.isu_cd,
        name = EXCLUDED.name,
        market = EXCLUDED.market,
        market_id = EXCLUDED.market_id,
        dept = EXCLUDED.dept,
        close = EXCLUDED.close,
        change_code = EXCLUDED.change_code,
        changes = EXCLUDED.changes,
        change_ratio = EXCLUDED.change_ratio,
        open = EXCLUDED.open,
        high = EXCLUDED.high,
        low = EXCLUDED.low,
        volume = EXCLUDED.volume,
        amount = EXCLUDED.amount,
        marcap = EXCLUDED.marcap,
        shares_outstanding = EXCLUDED.shares_outstanding,
        treasury_shares = COALESCE(EXCLUDED.treasury_shares, krx_instruments.treasury_shares),
        treasury_ratio = COALESCE(EXCLUDED.treasury_ratio, krx_instruments.treasury_ratio),
        data_date = EXCLUDED.data_date,
        updated_at = CURRENT_TIMESTAMP
"""

_UPDATE_FUNDAMENTALS_SQL = """
    UPDATE public.krx_instruments SET
        eps = %(eps)s,
        bps = %(bps)s,
        roe = %(roe)s,
        per = %(per)s,
        pbr = %(pbr)s,
        dividend_yield = %(dividend_yield)s,
        treasury_shares = COALESCE(%(treasury_shares)s, treasury_shares),
        treasury_ratio = COALESCE(%(treasury_ratio)s, treasury_ratio),
        intrinsic_value = %(intrinsic_value)s,
        safety_margin = %(safety_margin)s,
        valuation_status = %(valuation_status)s,
        valued_at = %(valued_at)s,
        updated_at = CURRENT_TIMESTAMP
    WHERE code = %(code)s
"""


def instrument_params(instrument: Instrument) -> Dict[str, Any]:
    return {
        "code": instrument.code,
        "isu_cd": instrument.isu_cd,
        "name": instrument.name,
        "market": instrument.market.label,
        "market_id": instrument.market.value,
        "dept": instrument.dept,
        "close": instrument.close,
        "change_code": instrument.change_code,
        "changes": instrument.changes,
        "change_ratio": instrument.change_ratio,
        "open": instrument.open,
        "high": instrument.high,
        "low": instrument.low,
        "volume": instrument.volume,
        "amount": instrument.amount,
        "marcap": instrument.marcap,
        "shares_outstanding": instrument.shares_outstanding,
        "treasury_shares": instrument.fundamentals.treasury_shares,
        "treasury_ratio": instrument.fundamentals.treasury_ratio,
        "data_date": instrument.data_date,
    }


def _as_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _as_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def row_to_instrument(row: Dict[str, Any]) -> Instrument:
    """Map a krx_instruments row (NUMERIC columns arrive as Decimal) to an Instrument."""
    return Instrument(
        code=row["code"],
        name=row["name"],
        market=MarketSegment.parse(row.get("market_id") or row["market"]),
        isu_cd=row.get("isu_cd"),
        dept=row.get("dept"),
        close=_as_float(row.get("close")),
        change_code=row.get("change_code"),
        changes=_as_float(row.get("changes")),
        change_ratio=_as_float(row.get("change_ratio")),
        open=_as_float(row.get("open")),
        high=_as_float(row.get("high")),
        low=_as_float(row.get("low")),
        volume=_as_int(row.get("volume")),
        amount=_as_int(row.get("amount")),
        marcap=_as_int(row.get("marcap")),
        shares_outstanding=_as_int(row.get("shares_outstanding")),
        fundamentals=FundamentalSnapshot(
            eps=_as_float(row.get("eps")),
            bps=_as_float(row.get("bps")),
            roe=_as_float(row.get("roe")),
            per=_as_float(row.get("per")),
            pbr=_as_float(row.get("pbr")),
            dividend_yield=_as_float(row.get("dividend_yield")),
            treasury_shares=_as_int(row.get("treasury_shares")),
            treasury_ratio=_as_float(row.get("treasury_ratio")),
        ),
        exclude=bool(row.get("exclude", False)),
        favorite=bool(row.get("favorite", False)),
        tags=list(row.get("tags") or []),
        data_date=row.get("data_date"),
    )


class InstrumentRepository:
    """DB access layer for instruments and job locks. Only SQL and transactions live here."""

    def __init__(self, pool: Any = None, statement_timeout: Optional[float] = None) -> None:
        self.pool = pool or db_connection.get_global_pool()
        self.statement_timeout = statement_timeout

    def _apply_timeout(self, cur: Any) -> None:
        if self.statement_timeout:
            cur.execute(
                "SELECT set_config('statement_timeout', %s, true)",
                (str(int(self.statement_timeout * 1000)),),
            )

    def ensure_schema(self) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(INSTRUMENTS_DDL)
                cur.execute(JOB_LOCKS_DDL)
            conn.commit()
        logger.info("Ensured krx_instruments and job_locks schema")

    def upsert_instruments(self, instruments: Sequence[Instrument]) -> int:
        """Insert or refresh baseline fields; returns the number of rows written."""
        if not instruments:
            return 0
        with self.pool.connection() as conn:
            try:
                with conn.cursor() as cur:
                    self._apply_timeout(cur)
                    cur.executemany(
                        _UPSERT_INSTRUMENT_SQL, [instrument_params(i) for i in instruments]
                    )
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.error(f"Failed to upsert {len(instruments)} instruments: {e}")
                raise
        logger.info(f"Upserted {len(instruments)} instruments")
        return len(instruments)

    def replace_directory(self, instruments: Sequence[Instrument]) -> int:
        """Clear the instrument set and reload it inside one transaction (full resync)."""
        with self.pool.connection() as conn:
            try:
                with conn.cursor() as cur:
                    self._apply_timeout(cur)
                    cur.execute("DELETE FROM public.krx_instruments")
                    cur.executemany(
                        _UPSERT_INSTRUMENT_SQL, [instrument_params(i) for i in instruments]
                    )
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.error(f"Full resync failed, directory left unchanged: {e}")
                raise
        logger.info(f"Replaced directory with {len(instruments)} instruments")
        return len(instruments)

    def upsert_fundamentals(
        self,
        code: str,
        snapshot: FundamentalSnapshot,
        result: ValuationResult,
        status: ItemStatus,
    ) -> bool:
        """Write scraped fundamentals and the valuation projection for one instrument."""
        params = snapshot.model_dump()
        params.update(
            {
                "code": code,
                "intrinsic_value": result.intrinsic_value,
                "safety_margin": result.safety_margin,
                "valuation_status": status.value,
                "valued_at": result.last_updated,
            }
        )
        with self.pool.connection() as conn:
            try:
                with conn.cursor() as cur:
                    self._apply_timeout(cur)
                    cur.execute(_UPDATE_FUNDAMENTALS_SQL, params)
                    updated: int = getattr(cur, "rowcount", 0) or 0
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        if updated == 0:
            logger.warning(f"No instrument row for {code}; fundamentals not stored")
        return updated > 0

    def fetch_instruments(
        self, codes: Optional[Iterable[str]] = None, include_excluded: bool = False
    ) -> List[Instrument]:
        clauses: List[str] = []
        params: List[Any] = []
        if codes is not None:
            clauses.append("code = ANY(%s)")
            params.append(list(codes))
        if not include_excluded:
            clauses.append("exclude = FALSE")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT * FROM public.krx_instruments {where} ORDER BY name"

        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
        instruments = []
        for row in rows:
            try:
                instruments.append(row_to_instrument(row))
            except ValueError as e:
                logger.warning(f"Skipping unreadable instrument row {row.get('code')}: {e}")
        return instruments

    def count_instruments(self) -> int:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT COUNT(*) AS n FROM public.krx_instruments")
                row = cur.fetchone()
        return int(row["n"]) if row else 0

    # --- job locks ---

    def try_acquire_lock(self, name: str, owner: str, now: datetime, expires_at: datetime) -> bool:
        """Take the named lock if it is free, expired, or already ours."""
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                        INSERT INTO public.job_locks (name, owner, acquired_at, expires_at)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (name) DO UPDATE SET
                            owner = EXCLUDED.owner,
                            acquired_at = EXCLUDED.acquired_at,
                            expires_at = EXCLUDED.expires_at
                        WHERE job_locks.expires_at < %s OR job_locks.owner = EXCLUDED.owner
                        RETURNING owner
                    """,
                    (name, owner, now, expires_at, now),
                )
                row = cur.fetchone()
            conn.commit()
        return bool(row) and row["owner"] == owner

    def release_lock(self, name: str, owner: str) -> bool:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM public.job_locks WHERE name = %s AND owner = %s",
                    (name, owner),
                )
                released: int = getattr(cur, "rowcount", 0) or 0
            conn.commit()
        return released > 0
