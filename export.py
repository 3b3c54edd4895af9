"""
Result Export Module

Projections of a simulation's monthly history into pandas DataFrames, plus the
one-shot CSV and JSON exports and JSON configuration loading used by the app.
"""

import json
import logging
import math
from dataclasses import asdict, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd

from sim import (
    ConfigurationError,
    DualRatio,
    HistoryRecord,
    MechanismVariant,
    SimulationConfig,
    SingleRatio,
    StateSnapshot,
)

logger = logging.getLogger(__name__)

EXPORT_VERSION = '1.0'

# History fields included in the summary CSV, with their column headers
CSV_COLUMNS = {
    'month': 'Month',
    'price': 'Token Price',
    'circulating_supply': 'Circulating Supply',
    'total_staked': 'Total Staked',
    'primary_treasury': 'Primary Treasury',
    'secondary_treasury': 'Secondary Treasury',
    'tokens_burned': 'Monthly Burned',
    'staker_fees_usd': 'Staker Fees (USD)',
    'treasury_fees_usd': 'Treasury Fees (USD)',
    'affiliate_fees_usd': 'Affiliate Fees (USD)',
    'buyback_fees_usd': 'Buyback Fees (USD)',
}

HISTORY_COLUMNS = [f.name for f in fields(HistoryRecord)]


def history_frame(snapshot: StateSnapshot) -> pd.DataFrame:
    """One row per recorded month, one column per HistoryRecord field"""
    return pd.DataFrame([asdict(record) for record in snapshot.history], columns=HISTORY_COLUMNS)


def annual_ratio_frame(snapshot: StateSnapshot) -> pd.DataFrame:
    """
    One row per completed year

    Legacy runs have a 'price_to_value' column; buyback runs have
    'cash_flow_ratio' and 'market_value_ratio'. Undefined ratios are missing values.
    """
    rows = [asdict(snapshot.annual_ratios[year]) for year in sorted(snapshot.annual_ratios)]
    if rows:
        return pd.DataFrame(rows)
    ratio_type = SingleRatio if snapshot.variant is MechanismVariant.LEGACY else DualRatio
    return pd.DataFrame(columns=[f.name for f in fields(ratio_type)])


def history_to_csv(snapshot: StateSnapshot, full: bool = False) -> str:
    """
    Serialize the history as CSV

    Args:
        snapshot: State snapshot to export
        full: Export every HistoryRecord field instead of the summary columns

    Returns:
        CSV text

    Raises:
        ValueError: if no month has been recorded yet
    """
    if not snapshot.history:
        raise ValueError("No simulation data to export")
    frame = history_frame(snapshot)
    if not full:
        frame = frame[list(CSV_COLUMNS)].rename(columns=CSV_COLUMNS)
    return frame.to_csv(index=False)


def _json_safe(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def snapshot_to_dict(snapshot: StateSnapshot, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    """Plain-data view of a snapshot: metadata, parameters, history, final state, annual ratios"""
    timestamp = timestamp or datetime.now(timezone.utc)
    params = snapshot.parameters
    return _json_safe({
        'metadata': {
            'version': EXPORT_VERSION,
            'variant': snapshot.variant,
            'timestamp': timestamp.isoformat(),
            'duration_months': params.simulation_months,
            'months_simulated': snapshot.month,
            'status': snapshot.status,
            'termination': snapshot.termination,
            'error': snapshot.error,
        },
        'parameters': asdict(params),
        'results': [asdict(record) for record in snapshot.history],
        'final_state': {
            'month': snapshot.month,
            'spot_price': snapshot.spot_price,
            'temporary_impact': snapshot.temporary_impact,
            'max_supply': snapshot.max_supply,
            'total_supply': snapshot.total_supply,
            'circulating_supply': snapshot.circulating_supply,
            'cumulative_burned': snapshot.cumulative_burned,
            'primary_treasury': snapshot.primary_treasury,
            'secondary_treasury': snapshot.secondary_treasury,
            'total_staked': snapshot.total_staked,
        },
        'annual_ratios': [asdict(snapshot.annual_ratios[year]) for year in sorted(snapshot.annual_ratios)],
    })


def snapshot_to_json(snapshot: StateSnapshot, timestamp: Optional[datetime] = None, indent: int = 2) -> str:
    """Serialize a snapshot as JSON; non-finite numbers become null"""
    return json.dumps(snapshot_to_dict(snapshot, timestamp), indent=indent, allow_nan=False)


def config_from_json(text: Union[str, bytes]) -> SimulationConfig:
    """
    Parse a JSON configuration

    Accepts either a flat mapping of SimulationConfig fields or a document
    with those fields under a "parameters" key. Bytes must be UTF-8.
    """
    if isinstance(text, bytes):
        try:
            text = text.decode('utf-8-sig')
        except UnicodeDecodeError as exc:
            raise ConfigurationError(f"Configuration file is not UTF-8 text: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid configuration file: {exc}") from exc
    if isinstance(data, dict) and isinstance(data.get('parameters'), dict):
        data = data['parameters']
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a JSON object")
    return SimulationConfig.from_dict(data)


def load_config(path: Union[str, Path]) -> SimulationConfig:
    """Load a SimulationConfig from a JSON file"""
    path = Path(path)
    config = config_from_json(path.read_bytes())
    logger.info("Loaded configuration from %s", path)
    return config


def config_to_json(config: SimulationConfig, indent: int = 2) -> str:
    return json.dumps({'parameters': config.to_dict()}, indent=indent)
