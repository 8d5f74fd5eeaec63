"""Offline momentum backtest over a ``ts,price`` CSV.

Replays the live entry rule (lookback baseline, threshold, cooldown, global
concurrency cap) and the percent bracket (target, stop, trailing stop) one
sample at a time. Positions still open at the end are marked to the last price.

    python -m backtest.momentum_backtest --file BTC-USD.csv --lookback 60 --threshold 5
"""
import argparse
import csv
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from monitoring.logging_utils import setup_logging


logger = logging.getLogger(__name__)


@dataclass
class BacktestParams:
    lookback_minutes: float = 60.0
    threshold_pct: float = 5.0
    target_pct: float = 4.0
    stop_pct: float = 2.0
    trail_pct: float = 0.0
    size_usd: float = 100.0
    cooldown_minutes: float = 180.0
    max_concurrent: int = 3
    slack_minutes: float = 5.0


@dataclass
class BacktestTrade:
    ts_in: float
    ts_out: float
    reason: str
    entry: float
    exit: float
    pnl: float


@dataclass
class _OpenPosition:
    entry: float
    target: float
    stop: float
    effective_stop: float
    high: float
    notional: float
    ts_in: float


def _parse_ts(value: str) -> float:
    value = value.strip()
    try:
        number = float(value)
    except ValueError:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    # Millisecond epochs are common in exported quote files
    return number / 1000.0 if number > 1e11 else number


def load_prices(path: str) -> Tuple[np.ndarray, np.ndarray]:
    """Read ``ts`` and ``price`` columns, dropping non-finite prices, sorted by time."""
    stamps: List[float] = []
    prices: List[float] = []
    with open(path, newline='', encoding='utf-8') as handle:
        reader = csv.DictReader(handle)
        if not reader.fieldnames or 'ts' not in reader.fieldnames or 'price' not in reader.fieldnames:
            raise ValueError('CSV must have columns: ts,price')
        for row in reader:
            try:
                price = float(row['price'])
            except (TypeError, ValueError):
                continue
            if not np.isfinite(price):
                continue
            stamps.append(_parse_ts(row['ts']))
            prices.append(price)
    ts = np.asarray(stamps, dtype=float)
    px = np.asarray(prices, dtype=float)
    order = np.argsort(ts, kind='stable')
    return ts[order], px[order]


def _trail(stop: float, trail_pct: float, high: float) -> float:
    if not trail_pct:
        return stop
    return max(stop, high * (1 - trail_pct / 100.0))


def pct_change_at(ts: np.ndarray, prices: np.ndarray, lo: int, i: int, lookback_s: float) -> Optional[float]:
    """Change from the last sample at or before ``ts[i] - lookback`` within ``[lo, i]``."""
    if i - lo + 1 < 2:
        return None
    boundary = ts[i] - lookback_s
    j = int(np.searchsorted(ts[lo:i + 1], boundary, side='right')) - 1
    if j < 0:
        return None
    base = prices[lo + j]
    last = prices[i]
    if not np.isfinite(base) or base <= 0:
        return None
    return (last - base) / base * 100.0


def run_backtest(ts: np.ndarray, prices: np.ndarray, params: BacktestParams) -> List[BacktestTrade]:
    lookback_s = params.lookback_minutes * 60.0
    retention_s = (params.lookback_minutes + params.slack_minutes) * 60.0
    cooldown_s = params.cooldown_minutes * 60.0

    trades: List[BacktestTrade] = []
    open_positions: List[_OpenPosition] = []
    last_buy_ts = 0.0
    lo = 0

    for i in range(len(prices)):
        now, price = float(ts[i]), float(prices[i])
        while lo < i and ts[lo] < now - retention_s:
            lo += 1

        still_open = []
        for pos in open_positions:
            pos.high = max(pos.high, price)
            pos.effective_stop = _trail(pos.stop, params.trail_pct, pos.high)
            if price >= pos.target:
                pnl = (pos.target - pos.entry) * (pos.notional / pos.entry)
                trades.append(BacktestTrade(pos.ts_in, now, 'target', pos.entry, pos.target, pnl))
            elif price <= pos.effective_stop:
                pnl = (price - pos.entry) * (pos.notional / pos.entry)
                trades.append(BacktestTrade(pos.ts_in, now, 'stop', pos.entry, price, pnl))
            else:
                still_open.append(pos)
        open_positions = still_open

        change = pct_change_at(ts, prices, lo, i, lookback_s)
        if change is None or change < params.threshold_pct or now - last_buy_ts < cooldown_s:
            continue
        if len(open_positions) >= params.max_concurrent:
            continue
        stop = price * (1 - params.stop_pct / 100.0)
        open_positions.append(_OpenPosition(
            entry=price,
            target=price * (1 + params.target_pct / 100.0),
            stop=stop,
            effective_stop=stop,
            high=price,
            notional=params.size_usd,
            ts_in=now,
        ))
        last_buy_ts = now

    if open_positions:
        last_ts, last_price = float(ts[-1]), float(prices[-1])
        for pos in open_positions:
            pnl = (last_price - pos.entry) * (pos.notional / pos.entry)
            trades.append(BacktestTrade(pos.ts_in, last_ts, 'eod', pos.entry, last_price, pnl))
    return trades


def summarize(trades: Sequence[BacktestTrade]) -> Dict:
    if not trades:
        return {'trades': 0, 'wins': 0, 'losses': 0, 'win_rate': 0.0, 'total_pnl': 0.0, 'avg_pnl': 0.0,
                'max_drawdown': 0.0}
    pnl = np.array([t.pnl for t in trades], dtype=float)
    equity = np.cumsum(pnl)
    running_max = np.maximum.accumulate(np.concatenate(([0.0], equity)))[1:]
    wins = int((pnl > 0).sum())
    return {
        'trades': len(trades),
        'wins': wins,
        'losses': len(trades) - wins,
        'win_rate': wins / len(trades) * 100.0,
        'total_pnl': float(pnl.sum()),
        'avg_pnl': float(pnl.mean()),
        'max_drawdown': float((running_max - equity).max()),
    }


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def write_outputs(trades: Sequence[BacktestTrade], summary: Dict, out_dir: str, source: str) -> Tuple[Path, Path]:
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    trades_path = out / 'backtest_trades.csv'
    with trades_path.open('w', newline='', encoding='utf-8') as handle:
        writer = csv.writer(handle)
        writer.writerow(['ts_in', 'ts_out', 'reason', 'entry', 'exit', 'pnl'])
        for t in trades:
            writer.writerow([_iso(t.ts_in), _iso(t.ts_out), t.reason, f"{t.entry:.2f}", f"{t.exit:.2f}", f"{t.pnl:.2f}"])
    summary_path = out / 'backtest_summary.txt'
    summary_path.write_text('\n'.join([
        f"file: {source}",
        f"trades: {summary['trades']}",
        f"wins: {summary['wins']}, losses: {summary['losses']}, winrate: {summary['win_rate']:.1f}%",
        f"total_pnl_usd: {summary['total_pnl']:.2f}",
        f"avg_pnl_per_trade_usd: {summary['avg_pnl']:.2f}",
        f"max_drawdown_usd: {summary['max_drawdown']:.2f}",
    ]) + '\n', encoding='utf-8')
    return trades_path, summary_path


def main(argv: Optional[Sequence[str]] = None) -> Dict:
    ap = argparse.ArgumentParser(description="Momentum entry / bracket exit backtest")
    ap.add_argument("--file", required=True, help="CSV with ts,price columns")
    ap.add_argument("--lookback", type=float, default=60.0)
    ap.add_argument("--threshold", type=float, default=5.0)
    ap.add_argument("--target", type=float, default=4.0)
    ap.add_argument("--stop", type=float, default=2.0)
    ap.add_argument("--trail", type=float, default=0.0)
    ap.add_argument("--size-usd", dest="size_usd", type=float, default=100.0)
    ap.add_argument("--cooldown", type=float, default=180.0)
    ap.add_argument("--max-concurrent", dest="max_concurrent", type=int, default=3)
    ap.add_argument("--out", default="var")
    args = ap.parse_args(argv)

    params = BacktestParams(
        lookback_minutes=args.lookback,
        threshold_pct=args.threshold,
        target_pct=args.target,
        stop_pct=args.stop,
        trail_pct=args.trail,
        size_usd=args.size_usd,
        cooldown_minutes=args.cooldown,
        max_concurrent=args.max_concurrent,
    )
    ts, prices = load_prices(args.file)
    trades = run_backtest(ts, prices, params)
    summary = summarize(trades)
    trades_path, summary_path = write_outputs(trades, summary, args.out, args.file)
    logger.info("Backtest params: %s", asdict(params))
    logger.info("Backtest complete: %s trades, total pnl %.2f", summary['trades'], summary['total_pnl'])
    logger.info("Trades CSV: %s; summary: %s", trades_path, summary_path)
    return summary


if __name__ == "__main__":
    setup_logging()
    main()
