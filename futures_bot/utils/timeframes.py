"""Kline interval string conversion."""

_UNIT_SECONDS = {"m": 60, "h": 3600, "d": 86400, "w": 604800}


def timeframe_seconds(tf: str) -> int:
    """Convert Binance-style interval (e.g. '5m', '1h', '1d') to seconds."""
    tf = tf.strip().lower()
    unit = tf[-1:] if tf else ""
    if unit not in _UNIT_SECONDS or not tf[:-1].isdigit() or int(tf[:-1]) <= 0:
        raise ValueError(f"Unsupported timeframe: {tf!r}")
    return int(tf[:-1]) * _UNIT_SECONDS[unit]


def timeframe_minutes(tf: str) -> int:
    """Interval length in whole minutes."""
    return timeframe_seconds(tf) // 60
