"""Summary figures for the dashboard stat cards."""
import logging
from typing import Any, Dict, Iterable

import pandas as pd

from signal_desk.services.pnl import round2

logger = logging.getLogger(__name__)

STAT_COLUMNS = ["status", "pnl", "confidence", "regime_confidence"]


def signals_frame(signals: Iterable[Any]) -> pd.DataFrame:
    rows = [{col: getattr(s, col, None) for col in STAT_COLUMNS} for s in signals]
    return pd.DataFrame(rows, columns=STAT_COLUMNS)


def compute_signal_stats(signals: Iterable[Any]) -> Dict[str, Any]:
    df = signals_frame(signals)
    total = len(df)
    if total == 0:
        return {
            "total": 0,
            "active": 0,
            "target_hits": 0,
            "sl_hits": 0,
            "expired": 0,
            "closed": 0,
            "total_pnl": 0.0,
            "win_rate": 0.0,
            "avg_confidence": 0.0,
            "avg_regime_confidence": 0.0,
        }

    status = df["status"].astype(str)
    pnl = pd.to_numeric(df["pnl"], errors="coerce")

    # Win rate counts only finished signals that carry a pnl
    finished = pnl[(status != "active") & pnl.notna()]
    win_rate = float((finished > 0).sum() / len(finished) * 100) if len(finished) else 0.0

    confidence = pd.to_numeric(df["confidence"], errors="coerce").fillna(0)
    regime_confidence = pd.to_numeric(df["regime_confidence"], errors="coerce").fillna(0)

    stats = {
        "total": total,
        "active": int((status == "active").sum()),
        "target_hits": int(status.str.startswith("target").sum()),
        "sl_hits": int((status == "sl_hit").sum()),
        "expired": int((status == "expired").sum()),
        "closed": int((status == "closed").sum()),
        "total_pnl": round2(float(pnl.fillna(0).sum())),
        "win_rate": round(win_rate, 2),
        "avg_confidence": round(float(confidence.mean()), 2),
        "avg_regime_confidence": round(float(regime_confidence.mean()), 2),
    }
    logger.debug(f"Computed stats over {total} signals")
    return stats
