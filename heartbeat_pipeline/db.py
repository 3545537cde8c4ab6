from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from urllib.parse import urlsplit

import psycopg

from .models import (
    CorrelationRecord,
    EvolutionState,
    PortfolioBalance,
    Prediction,
    PredictionResolution,
    Tick,
    Trade,
    Vital,
)

_PREDICTION_COLUMNS = """
    id,
    symbol,
    asset_class,
    prediction_type,
    predicted_direction,
    predicted_magnitude,
    predicted_confidence,
    entry_price,
    horizon_seconds,
    market_conditions,
    created_at
"""

_TRADE_COLUMNS = """
    id,
    prediction_id,
    symbol,
    asset_class,
    direction,
    entry_price,
    shares,
    entry_time,
    predicted_direction,
    predicted_confidence,
    status,
    exit_price,
    exit_time,
    pnl,
    pnl_percent,
    actual_direction
"""

_PORTFOLIO_COLUMNS = """
    portfolio_key,
    balance,
    target_balance,
    peak_balance,
    trough_balance,
    total_trades,
    winning_trades,
    last_trade_at
"""


def _prediction_from_row(row: tuple) -> Prediction:
    return Prediction(
        id=int(row[0]),
        symbol=row[1],
        asset_class=row[2],
        prediction_type=row[3],
        predicted_direction=row[4],
        predicted_magnitude=float(row[5]),
        confidence=float(row[6]),
        entry_price=float(row[7]),
        horizon_seconds=int(row[8]),
        market_conditions=row[9] if isinstance(row[9], dict) else {},
        created_at=row[10],
    )


def _trade_from_row(row: tuple) -> Trade:
    return Trade(
        id=int(row[0]),
        prediction_id=int(row[1]),
        symbol=row[2],
        asset_class=row[3],
        direction=row[4],
        entry_price=float(row[5]),
        shares=float(row[6]),
        entry_time=row[7],
        predicted_direction=row[8],
        confidence=float(row[9]),
        status=row[10],
        exit_price=float(row[11]) if row[11] is not None else None,
        exit_time=row[12],
        pnl=float(row[13]) if row[13] is not None else None,
        pnl_percent=float(row[14]) if row[14] is not None else None,
        actual_direction=row[15],
    )


def _portfolio_from_row(row: tuple) -> PortfolioBalance:
    return PortfolioBalance(
        portfolio_key=row[0],
        balance=float(row[1]),
        target_balance=float(row[2]),
        peak_balance=float(row[3]),
        trough_balance=float(row[4]),
        total_trades=int(row[5]),
        winning_trades=int(row[6]),
        last_trade_at=row[7],
    )


class PostgresStore:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        try:
            self.conn = psycopg.connect(database_url, connect_timeout=15)
        except psycopg.OperationalError as exc:
            host = urlsplit(database_url).hostname or "unknown-host"
            raise RuntimeError(
                f"Postgres connection failed for host '{host}'. "
                "Verify DATABASE_URL or the PG* variables."
            ) from exc

    def close(self) -> None:
        self.conn.close()

    def rollback(self) -> None:
        self.conn.rollback()

    def ensure_schema(self) -> None:
        schema_sql = Path(__file__).with_name("schema.sql").read_text(encoding="utf-8")
        with self.conn.cursor() as cur:
            cur.execute(schema_sql)
        self.conn.commit()

    # Ticks

    def insert_ticks(self, ticks: list[Tick]) -> int:
        if not ticks:
            return 0
        with self.conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO market_tick_history (
                    ts,
                    symbol,
                    asset_class,
                    source,
                    price,
                    bid,
                    ask,
                    volume
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                [
                    (
                        tick.ts,
                        tick.symbol,
                        tick.asset_class,
                        tick.source,
                        tick.price,
                        tick.bid,
                        tick.ask,
                        tick.volume,
                    )
                    for tick in ticks
                ],
            )
        self.conn.commit()
        return len(ticks)

    def get_recent_prices(self, symbol: str, *, limit: int, real_only: bool = True) -> list[float]:
        """Most-recent-first prices for a symbol."""
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT price
                FROM market_tick_history
                WHERE symbol = %s
                  AND (NOT %s OR source <> 'fallback')
                ORDER BY ts DESC, id DESC
                LIMIT %s
                """,
                (symbol, real_only, limit),
            )
            rows = cur.fetchall()
        return [float(row[0]) for row in rows]

    def get_latest_price(self, symbol: str, *, real_only: bool = True) -> float | None:
        prices = self.get_recent_prices(symbol, limit=1, real_only=real_only)
        return prices[0] if prices else None

    def get_latest_prices(self, symbols: list[str]) -> dict[str, float]:
        if not symbols:
            return {}
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT ON (symbol) symbol, price
                FROM market_tick_history
                WHERE symbol = ANY(%s)
                ORDER BY symbol, ts DESC, id DESC
                """,
                (list(symbols),),
            )
            rows = cur.fetchall()
        return {row[0]: float(row[1]) for row in rows}

    def count_ticks_since(self, since_ts: datetime) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT COUNT(*) FROM market_tick_history WHERE ts >= %s",
                (since_ts,),
            )
            row = cur.fetchone()
        return int(row[0]) if row else 0

    # Predictions

    def insert_predictions(self, predictions: list[Prediction]) -> list[Prediction]:
        stored: list[Prediction] = []
        with self.conn.cursor() as cur:
            for prediction in predictions:
                cur.execute(
                    """
                    INSERT INTO prediction_outcomes (
                        symbol,
                        asset_class,
                        prediction_type,
                        predicted_direction,
                        predicted_magnitude,
                        predicted_confidence,
                        entry_price,
                        horizon_seconds,
                        market_conditions,
                        created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        prediction.symbol,
                        prediction.asset_class,
                        prediction.prediction_type,
                        prediction.predicted_direction,
                        prediction.predicted_magnitude,
                        prediction.confidence,
                        prediction.entry_price,
                        prediction.horizon_seconds,
                        psycopg.types.json.Jsonb(prediction.market_conditions),
                        prediction.created_at,
                    ),
                )
                stored.append(replace(prediction, id=int(cur.fetchone()[0])))
        self.conn.commit()
        return stored

    def get_due_predictions(self, now_utc: datetime, *, limit: int = 500) -> list[Prediction]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_PREDICTION_COLUMNS}
                FROM prediction_outcomes
                WHERE resolved_at IS NULL
                  AND created_at + make_interval(secs => horizon_seconds) <= %s
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (now_utc, limit),
            )
            rows = cur.fetchall()
        return [_prediction_from_row(row) for row in rows]

    def resolve_prediction(self, resolution: PredictionResolution) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE prediction_outcomes
                SET
                    exit_price = %s,
                    actual_direction = %s,
                    actual_magnitude = %s,
                    direction_correct = %s,
                    magnitude_accuracy = %s,
                    timing_accuracy = %s,
                    calibration_score = %s,
                    composite_score = %s,
                    resolved_at = %s
                WHERE id = %s AND resolved_at IS NULL
                RETURNING id
                """,
                (
                    resolution.exit_price,
                    resolution.actual_direction,
                    resolution.actual_magnitude,
                    resolution.direction_correct,
                    resolution.magnitude_accuracy,
                    resolution.timing_accuracy,
                    resolution.calibration_score,
                    resolution.composite_score,
                    resolution.resolved_at,
                    resolution.prediction_id,
                ),
            )
            updated = cur.fetchone() is not None
        self.conn.commit()
        return updated

    def update_symbol_accuracy(self, resolution: PredictionResolution, asset_class: str) -> None:
        correct = 1 if resolution.direction_correct else 0
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO symbol_accuracy_metrics AS m (
                    symbol,
                    asset_class,
                    total_predictions,
                    correct_predictions,
                    direction_accuracy,
                    magnitude_accuracy,
                    timing_accuracy,
                    calibration_accuracy,
                    composite_accuracy,
                    last_prediction_at,
                    updated_at
                )
                VALUES (%s, %s, 1, %s, %s, %s, %s, %s, %s, %s, NOW())
                ON CONFLICT (symbol)
                DO UPDATE SET
                    asset_class = EXCLUDED.asset_class,
                    total_predictions = m.total_predictions + 1,
                    correct_predictions = m.correct_predictions + EXCLUDED.correct_predictions,
                    direction_accuracy = (m.correct_predictions + EXCLUDED.correct_predictions)::double precision
                        / (m.total_predictions + 1),
                    magnitude_accuracy = (m.magnitude_accuracy * m.total_predictions + EXCLUDED.magnitude_accuracy)
                        / (m.total_predictions + 1),
                    timing_accuracy = (m.timing_accuracy * m.total_predictions + EXCLUDED.timing_accuracy)
                        / (m.total_predictions + 1),
                    calibration_accuracy = (m.calibration_accuracy * m.total_predictions + EXCLUDED.calibration_accuracy)
                        / (m.total_predictions + 1),
                    composite_accuracy = (m.composite_accuracy * m.total_predictions + EXCLUDED.composite_accuracy)
                        / (m.total_predictions + 1),
                    last_prediction_at = GREATEST(m.last_prediction_at, EXCLUDED.last_prediction_at),
                    updated_at = NOW()
                """,
                (
                    resolution.symbol,
                    asset_class,
                    correct,
                    float(correct),
                    resolution.magnitude_accuracy,
                    resolution.timing_accuracy,
                    resolution.calibration_score,
                    resolution.composite_score,
                    resolution.resolved_at,
                ),
            )
        self.conn.commit()

    def get_recent_resolved_scores(self, *, limit: int) -> list[dict[str, object]]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT composite_score, direction_correct
                FROM prediction_outcomes
                WHERE resolved_at IS NOT NULL
                ORDER BY resolved_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [
            {
                "composite_score": float(row[0]) if row[0] is not None else 0.0,
                "direction_correct": bool(row[1]),
            }
            for row in rows
        ]

    def get_recent_resolved_predictions(self, *, limit: int = 10) -> list[dict[str, object]]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    id,
                    symbol,
                    predicted_direction,
                    actual_direction,
                    predicted_confidence,
                    entry_price,
                    exit_price,
                    composite_score,
                    direction_correct,
                    resolved_at
                FROM prediction_outcomes
                WHERE resolved_at IS NOT NULL
                ORDER BY resolved_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [
            {
                "id": row[0],
                "symbol": row[1],
                "predicted_direction": row[2],
                "actual_direction": row[3],
                "confidence": row[4],
                "entry_price": row[5],
                "exit_price": row[6],
                "composite_score": row[7],
                "direction_correct": row[8],
                "resolved_at": row[9],
            }
            for row in rows
        ]

    def get_recent_predictions(self, *, limit: int = 20) -> list[dict[str, object]]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    id,
                    symbol,
                    predicted_direction,
                    predicted_confidence,
                    predicted_magnitude,
                    entry_price,
                    created_at,
                    resolved_at,
                    composite_score
                FROM prediction_outcomes
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [
            {
                "id": row[0],
                "symbol": row[1],
                "predicted_direction": row[2],
                "confidence": row[3],
                "magnitude": row[4],
                "entry_price": row[5],
                "created_at": row[6],
                "resolved_at": row[7],
                "composite_score": row[8],
            }
            for row in rows
        ]

    def get_trade_candidates(self, *, min_confidence: float, limit: int) -> list[Prediction]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_PREDICTION_COLUMNS}
                FROM prediction_outcomes
                WHERE resolved_at IS NULL
                  AND predicted_confidence >= %s
                  AND predicted_direction <> 'flat'
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (min_confidence, limit),
            )
            rows = cur.fetchall()
        return [_prediction_from_row(row) for row in rows]

    # Trades

    def has_trade_for_prediction(self, prediction_id: int) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM autonomous_trades WHERE prediction_id = %s LIMIT 1",
                (prediction_id,),
            )
            return cur.fetchone() is not None

    def insert_trade(self, trade: Trade) -> int | None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO autonomous_trades (
                    prediction_id,
                    symbol,
                    asset_class,
                    direction,
                    entry_price,
                    shares,
                    entry_time,
                    predicted_direction,
                    predicted_confidence,
                    status
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 'open')
                ON CONFLICT (prediction_id) DO NOTHING
                RETURNING id
                """,
                (
                    trade.prediction_id,
                    trade.symbol,
                    trade.asset_class,
                    trade.direction,
                    trade.entry_price,
                    trade.shares,
                    trade.entry_time,
                    trade.predicted_direction,
                    trade.confidence,
                ),
            )
            row = cur.fetchone()
        self.conn.commit()
        return int(row[0]) if row is not None else None

    def get_open_trades(self, *, opened_before: datetime | None = None) -> list[Trade]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_TRADE_COLUMNS}
                FROM autonomous_trades
                WHERE status = 'open'
                  AND (%s::timestamptz IS NULL OR entry_time < %s::timestamptz)
                ORDER BY entry_time ASC
                """,
                (opened_before, opened_before),
            )
            rows = cur.fetchall()
        return [_trade_from_row(row) for row in rows]

    def close_trade(
        self,
        trade_id: int,
        *,
        exit_price: float,
        exit_time: datetime,
        pnl: float,
        pnl_percent: float,
        actual_direction: str,
    ) -> bool:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE autonomous_trades
                SET
                    status = 'closed',
                    exit_price = %s,
                    exit_time = %s,
                    pnl = %s,
                    pnl_percent = %s,
                    actual_direction = %s
                WHERE id = %s AND status = 'open'
                RETURNING id
                """,
                (exit_price, exit_time, pnl, pnl_percent, actual_direction, trade_id),
            )
            updated = cur.fetchone() is not None
        self.conn.commit()
        return updated

    def get_recent_trades(self, *, limit: int = 20) -> list[dict[str, object]]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_TRADE_COLUMNS}
                FROM autonomous_trades
                ORDER BY entry_time DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [
            {
                "id": row[0],
                "prediction_id": row[1],
                "symbol": row[2],
                "direction": row[4],
                "entry_price": row[5],
                "shares": row[6],
                "entry_time": row[7],
                "status": row[10],
                "exit_price": row[11],
                "exit_time": row[12],
                "pnl": row[13],
                "pnl_percent": row[14],
            }
            for row in rows
        ]

    # Portfolio

    def get_portfolio(
        self, portfolio_key: str, *, starting_balance: float, target_balance: float
    ) -> PortfolioBalance:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO portfolio_balance (
                    portfolio_key,
                    balance,
                    target_balance,
                    peak_balance,
                    trough_balance
                )
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (portfolio_key) DO NOTHING
                """,
                (portfolio_key, starting_balance, target_balance, starting_balance, starting_balance),
            )
            cur.execute(
                f"SELECT {_PORTFOLIO_COLUMNS} FROM portfolio_balance WHERE portfolio_key = %s",
                (portfolio_key,),
            )
            row = cur.fetchone()
        self.conn.commit()
        return _portfolio_from_row(row)

    def save_portfolio(self, portfolio: PortfolioBalance, *, expected: PortfolioBalance) -> bool:
        """Write a recomputed snapshot only if nobody changed the row since `expected` was read."""
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE portfolio_balance
                SET
                    balance = %s,
                    peak_balance = %s,
                    trough_balance = %s,
                    total_trades = %s,
                    winning_trades = %s,
                    last_trade_at = %s,
                    updated_at = NOW()
                WHERE portfolio_key = %s
                  AND balance = %s
                  AND total_trades = %s
                RETURNING portfolio_key
                """,
                (
                    portfolio.balance,
                    portfolio.peak_balance,
                    portfolio.trough_balance,
                    portfolio.total_trades,
                    portfolio.winning_trades,
                    portfolio.last_trade_at,
                    portfolio.portfolio_key,
                    expected.balance,
                    expected.total_trades,
                ),
            )
            saved = cur.fetchone() is not None
        self.conn.commit()
        return saved

    # Correlations

    def upsert_correlations(self, records: list[CorrelationRecord]) -> int:
        with self.conn.cursor() as cur:
            for record in records:
                cur.execute(
                    """
                    INSERT INTO market_correlations (
                        symbol_a,
                        symbol_b,
                        timeframe,
                        correlation_coefficient,
                        sample_size,
                        computed_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (symbol_a, symbol_b, timeframe)
                    DO UPDATE SET
                        correlation_coefficient = EXCLUDED.correlation_coefficient,
                        sample_size = EXCLUDED.sample_size,
                        computed_at = EXCLUDED.computed_at
                    """,
                    (
                        record.symbol_a,
                        record.symbol_b,
                        record.timeframe,
                        record.coefficient,
                        record.sample_size,
                        record.computed_at,
                    ),
                )
        self.conn.commit()
        return len(records)

    def get_correlations(
        self, *, min_coefficient: float | None = None, limit: int = 50
    ) -> list[dict[str, object]]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT symbol_a, symbol_b, timeframe, correlation_coefficient, sample_size, computed_at
                FROM market_correlations
                WHERE %s::double precision IS NULL OR correlation_coefficient > %s
                ORDER BY correlation_coefficient DESC
                LIMIT %s
                """,
                (min_coefficient, min_coefficient, limit),
            )
            rows = cur.fetchall()
        return [
            {
                "symbol_a": row[0],
                "symbol_b": row[1],
                "timeframe": row[2],
                "coefficient": row[3],
                "sample_size": row[4],
                "computed_at": row[5],
            }
            for row in rows
        ]

    # Evolution

    def get_evolution_state(self, state_type: str) -> EvolutionState | None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    state_type,
                    generation,
                    fitness_score,
                    total_predictions_seen,
                    genes,
                    adaptation_history,
                    last_mutation_at
                FROM evolution_state
                WHERE state_type = %s
                """,
                (state_type,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return EvolutionState(
            state_type=row[0],
            generation=int(row[1]),
            fitness_score=float(row[2]),
            total_predictions_seen=int(row[3]),
            genes={key: float(value) for key, value in (row[4] or {}).items()},
            adaptation_history=list(row[5] or []),
            last_mutation_at=row[6],
        )

    def save_evolution_state(self, state: EvolutionState, *, expected_generation: int) -> bool:
        params = (
            state.generation,
            state.fitness_score,
            state.total_predictions_seen,
            psycopg.types.json.Jsonb(state.genes),
            psycopg.types.json.Jsonb(state.adaptation_history),
            state.last_mutation_at,
        )
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE evolution_state
                SET
                    generation = %s,
                    fitness_score = %s,
                    total_predictions_seen = %s,
                    genes = %s,
                    adaptation_history = %s,
                    last_mutation_at = %s,
                    updated_at = NOW()
                WHERE state_type = %s AND generation = %s
                RETURNING id
                """,
                params + (state.state_type, expected_generation),
            )
            saved = cur.fetchone() is not None
            if not saved and expected_generation == 0:
                cur.execute(
                    """
                    INSERT INTO evolution_state (
                        generation,
                        fitness_score,
                        total_predictions_seen,
                        genes,
                        adaptation_history,
                        last_mutation_at,
                        state_type
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (state_type) DO NOTHING
                    RETURNING id
                    """,
                    params + (state.state_type,),
                )
                saved = cur.fetchone() is not None
        self.conn.commit()
        return saved

    # Vitals and per-symbol metrics

    def upsert_vital(self, vital: Vital) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO system_vitals (name, status, value, metadata, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (name)
                DO UPDATE SET
                    status = EXCLUDED.status,
                    value = EXCLUDED.value,
                    metadata = EXCLUDED.metadata,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    vital.name,
                    vital.status,
                    vital.value,
                    psycopg.types.json.Jsonb(vital.metadata),
                    vital.updated_at,
                ),
            )
        self.conn.commit()

    def get_vitals(self) -> list[dict[str, object]]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT name, status, value, metadata, updated_at
                FROM system_vitals
                ORDER BY name ASC
                """
            )
            rows = cur.fetchall()
        return [
            {
                "name": row[0],
                "status": row[1],
                "value": row[2],
                "metadata": row[3] if isinstance(row[3], dict) else {},
                "updated_at": row[4],
            }
            for row in rows
        ]

    def get_symbol_accuracy(self, *, limit: int = 50) -> list[dict[str, object]]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                    symbol,
                    asset_class,
                    total_predictions,
                    correct_predictions,
                    direction_accuracy,
                    magnitude_accuracy,
                    timing_accuracy,
                    calibration_accuracy,
                    composite_accuracy,
                    last_prediction_at
                FROM symbol_accuracy_metrics
                ORDER BY composite_accuracy DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [
            {
                "symbol": row[0],
                "asset_class": row[1],
                "total_predictions": row[2],
                "correct_predictions": row[3],
                "direction_accuracy": row[4],
                "magnitude_accuracy": row[5],
                "timing_accuracy": row[6],
                "calibration_accuracy": row[7],
                "composite_accuracy": row[8],
                "last_prediction_at": row[9],
            }
            for row in rows
        ]
