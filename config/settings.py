"""Typed, validated view over the raw configuration document."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config_loader import Config


class ConfigError(ValueError):
    """Raised at startup when the configuration cannot be used."""


def _section(source: Any, name: str) -> Dict[str, Any]:
    if source is None:
        return {}
    if isinstance(source, Config):
        value = source.get(name, {})
    elif isinstance(source, dict):
        value = source.get(name, {})
    else:
        value = getattr(source, name, {})
    if hasattr(value, 'to_dict'):
        value = value.to_dict()
    return value or {}


def _pick(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    # Accept both snake_case and the camelCase spelling used by the dashboard
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _as_float(value: Any, name: str) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {name}: {value!r}") from exc


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _ensure_number(value: Optional[float], name: str, minimum: float = 0.0) -> None:
    if value is None or not math.isfinite(value) or value < minimum:
        raise ConfigError(f"Invalid {name}: {value}")


@dataclass
class RuntimeSettings:
    poll_ms: int = 30000
    max_concurrent: int = 3
    market_hours_only: bool = True
    eod_close_enabled: bool = False
    eod_close_for_crypto: bool = False
    eod_cutoff_minutes: float = 5.0
    eod_close_partial_pct: float = 100.0
    dry_run: bool = False
    dry_run_slippage_bps: float = 0.0
    dry_run_fee: float = 0.0
    cooldown_minutes: float = 180.0
    momentum_slack_minutes: float = 30.0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'RuntimeSettings':
        defaults = cls()
        return cls(
            poll_ms=int(_as_float(_pick(raw, 'poll_ms', 'pollMs', default=defaults.poll_ms), 'poll_ms')),
            max_concurrent=int(_as_float(
                _pick(raw, 'max_concurrent', 'maxConcurrent', 'maxConcurrentCrypto', default=defaults.max_concurrent),
                'max_concurrent',
            )),
            market_hours_only=_as_bool(_pick(raw, 'market_hours_only', 'marketHoursOnly', default=defaults.market_hours_only)),
            eod_close_enabled=_as_bool(_pick(raw, 'eod_close_enabled', 'eodCloseEnabled', default=defaults.eod_close_enabled)),
            eod_close_for_crypto=_as_bool(_pick(raw, 'eod_close_for_crypto', 'eodCloseForCrypto', default=False)),
            eod_cutoff_minutes=_as_float(
                _pick(raw, 'eod_cutoff_minutes', 'eodCutoffMinutes', 'eodCutoffMin', default=defaults.eod_cutoff_minutes),
                'eod_cutoff_minutes',
            ),
            eod_close_partial_pct=_as_float(
                _pick(raw, 'eod_close_partial_pct', 'eodClosePartialPct', default=defaults.eod_close_partial_pct),
                'eod_close_partial_pct',
            ),
            dry_run=_as_bool(_pick(raw, 'dry_run', 'dryRun', default=defaults.dry_run)),
            dry_run_slippage_bps=_as_float(
                _pick(raw, 'dry_run_slippage_bps', 'dryRunSlippageBps', default=0.0), 'dry_run_slippage_bps'
            ),
            dry_run_fee=_as_float(_pick(raw, 'dry_run_fee', 'dryRunFee', default=0.0), 'dry_run_fee'),
            cooldown_minutes=_as_float(
                _pick(raw, 'cooldown_minutes', 'cooldownMinutes', default=defaults.cooldown_minutes), 'cooldown_minutes'
            ),
            momentum_slack_minutes=_as_float(
                _pick(raw, 'momentum_slack_minutes', default=defaults.momentum_slack_minutes), 'momentum_slack_minutes'
            ),
        )

    def validate(self) -> None:
        _ensure_number(float(self.poll_ms), 'runtime.poll_ms', 1)
        _ensure_number(float(self.max_concurrent), 'runtime.max_concurrent', 1)
        _ensure_number(self.eod_cutoff_minutes, 'runtime.eod_cutoff_minutes', 0)
        if not (0 < self.eod_close_partial_pct <= 100):
            raise ConfigError(f"Invalid runtime.eod_close_partial_pct: {self.eod_close_partial_pct}")
        _ensure_number(self.dry_run_slippage_bps, 'runtime.dry_run_slippage_bps', 0)
        _ensure_number(self.dry_run_fee, 'runtime.dry_run_fee', 0)


@dataclass
class OrderSizing:
    size_usd: Optional[float] = None
    qty: Optional[float] = None
    time_in_force: str = 'gtc'
    whole_shares: bool = False

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'OrderSizing':
        raw = raw or {}
        return cls(
            size_usd=_as_float(_pick(raw, 'size_usd', 'sizeUSD'), 'order.size_usd'),
            qty=_as_float(_pick(raw, 'qty', 'quantity'), 'order.qty'),
            time_in_force=str(_pick(raw, 'time_in_force', 'timeInForce', default='gtc')),
            whole_shares=_as_bool(_pick(raw, 'whole_shares', 'wholeShares', default=False)),
        )


@dataclass
class PostBuyBracket:
    target_pct: Optional[float] = None
    stop_pct: Optional[float] = None
    trail_pct: float = 0.0

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional['PostBuyBracket']:
        if not raw:
            return None
        return cls(
            target_pct=_as_float(_pick(raw, 'target_pct', 'targetPct'), 'post_buy_bracket.target_pct'),
            stop_pct=_as_float(_pick(raw, 'stop_pct', 'stopPct'), 'post_buy_bracket.stop_pct'),
            trail_pct=_as_float(_pick(raw, 'trail_pct', 'trailPct', default=0.0), 'post_buy_bracket.trail_pct') or 0.0,
        )

    @property
    def is_set(self) -> bool:
        return self.target_pct is not None or self.stop_pct is not None


@dataclass
class MomentumRule:
    instrument: str
    threshold_pct: float
    lookback_minutes: float = 60.0
    poll_ms: Optional[int] = None
    cooldown_minutes: float = 180.0
    order: OrderSizing = field(default_factory=OrderSizing)
    post_buy_bracket: Optional[PostBuyBracket] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], runtime: RuntimeSettings) -> 'MomentumRule':
        instrument = _pick(raw, 'instrument', 'pair', 'symbol')
        if not instrument:
            raise ConfigError('momentum rule missing "instrument"')
        poll_ms = _as_float(_pick(raw, 'poll_ms', 'pollMs'), 'poll_ms')
        return cls(
            instrument=str(instrument).upper(),
            threshold_pct=_as_float(_pick(raw, 'threshold_pct', 'thresholdPct'), 'threshold_pct'),
            lookback_minutes=_as_float(_pick(raw, 'lookback_minutes', 'lookbackMinutes', default=60), 'lookback_minutes'),
            poll_ms=int(poll_ms) if poll_ms is not None else None,
            cooldown_minutes=_as_float(
                _pick(raw, 'cooldown_minutes', 'cooldownMinutes', default=runtime.cooldown_minutes), 'cooldown_minutes'
            ),
            order=OrderSizing.from_dict(_pick(raw, 'order', 'order_sizing', 'orderSizing', default={})),
            post_buy_bracket=PostBuyBracket.from_dict(_pick(raw, 'post_buy_bracket', 'postBuyBracket')),
        )

    def validate(self, runtime: RuntimeSettings) -> None:
        _ensure_number(self.threshold_pct, f'{self.instrument}.threshold_pct', 0)
        _ensure_number(self.lookback_minutes, f'{self.instrument}.lookback_minutes', 1)
        _ensure_number(float(self.poll_ms or runtime.poll_ms), f'{self.instrument}.poll_ms', 1000)
        _ensure_number(self.cooldown_minutes, f'{self.instrument}.cooldown_minutes', 0)
        if self.order.qty is not None:
            _ensure_number(self.order.qty, f'{self.instrument}.order.qty', 0)
            if self.order.qty <= 0:
                raise ConfigError(f"Invalid {self.instrument}.order.qty: {self.order.qty}")
        else:
            _ensure_number(self.order.size_usd, f'{self.instrument}.order.size_usd', 1)


@dataclass
class TickerConfig:
    """Static bracket for an instrument managed by the exit state machine."""

    symbol: str
    qty: Optional[float] = None
    target: float = math.inf
    stop: float = 0.0
    time_in_force: str = 'gfd'
    trail_pct: float = 0.0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'TickerConfig':
        symbol = _pick(raw, 'symbol', 'instrument')
        if not symbol:
            raise ConfigError('ticker missing "symbol"')
        target = _as_float(_pick(raw, 'target'), 'target')
        stop = _as_float(_pick(raw, 'stop'), 'stop')
        return cls(
            symbol=str(symbol).upper(),
            qty=_as_float(_pick(raw, 'qty', 'quantity'), 'qty'),
            target=target if target is not None else math.inf,
            stop=stop if stop is not None else 0.0,
            time_in_force=str(_pick(raw, 'time_in_force', 'timeInForce', default='gfd')),
            trail_pct=_as_float(_pick(raw, 'trail_pct', 'trailPct', default=0.0), 'trail_pct') or 0.0,
        )

    @classmethod
    def open_bracket(cls, symbol: str, time_in_force: str = 'gtc') -> 'TickerConfig':
        return cls(symbol=symbol, time_in_force=time_in_force)


@dataclass
class FileSettings:
    overrides: str = 'config/overrides.json'
    ledger: str = '.data/sim_state.json'
    trades_csv: str = 'var/trades.csv'
    mtm_csv: str = 'var/mtm.csv'
    log_file: Optional[str] = 'var/trade.log'


@dataclass
class RetrySettings:
    attempts: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0


@dataclass
class CalendarSettings:
    timezone: str = 'America/New_York'
    open: str = '09:30'
    close: str = '16:00'


@dataclass
class BrokerSettings:
    base_url: str = 'http://127.0.0.1:8080'
    api_token: str = ''
    timeout_s: float = 15.0


@dataclass
class ApiSettings:
    host: str = '127.0.0.1'
    port: int = 7070
    token: str = ''


@dataclass
class MonitoringSettings:
    prometheus_port: Optional[int] = None
    alert_webhook: Optional[str] = None
    overrides_watch_s: float = 2.0


@dataclass
class Settings:
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    momentum: List[MomentumRule] = field(default_factory=list)
    tickers: List[TickerConfig] = field(default_factory=list)
    files: FileSettings = field(default_factory=FileSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    calendar: CalendarSettings = field(default_factory=CalendarSettings)
    broker: BrokerSettings = field(default_factory=BrokerSettings)
    api: ApiSettings = field(default_factory=ApiSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    @classmethod
    def from_config(cls, source: Any) -> 'Settings':
        runtime = RuntimeSettings.from_dict(_section(source, 'runtime'))
        raw_rules = _section_list(source, 'momentum') or _section_list(source, 'cryptoMomentum')
        momentum = [MomentumRule.from_dict(item, runtime) for item in raw_rules]
        tickers = [TickerConfig.from_dict(item) for item in _section_list(source, 'tickers')]

        files_raw = _section(source, 'files')
        retry_raw = _section(source, 'retry')
        calendar_raw = _section(source, 'calendar')
        broker_raw = _section(source, 'broker')
        api_raw = _section(source, 'api')
        monitoring_raw = _section(source, 'monitoring')

        settings = cls(
            runtime=runtime,
            momentum=momentum,
            tickers=tickers,
            files=FileSettings(**{k: v for k, v in files_raw.items() if k in FileSettings.__dataclass_fields__}),
            retry=RetrySettings(
                attempts=int(retry_raw.get('attempts', 5)),
                base_delay_s=float(retry_raw.get('base_delay_s', 1.0)),
                max_delay_s=float(retry_raw.get('max_delay_s', 30.0)),
            ),
            calendar=CalendarSettings(**{k: str(v) for k, v in calendar_raw.items()
                                         if k in CalendarSettings.__dataclass_fields__}),
            broker=BrokerSettings(
                base_url=str(broker_raw.get('base_url') or BrokerSettings.base_url),
                api_token=str(broker_raw.get('api_token') or ''),
                timeout_s=float(broker_raw.get('timeout_s', 15.0)),
            ),
            api=ApiSettings(
                host=str(api_raw.get('host') or ApiSettings.host),
                port=int(api_raw.get('port') or ApiSettings.port),
                token=str(api_raw.get('token') or ''),
            ),
            monitoring=MonitoringSettings(
                prometheus_port=int(monitoring_raw['prometheus_port']) if monitoring_raw.get('prometheus_port') else None,
                alert_webhook=monitoring_raw.get('alert_webhook') or None,
                overrides_watch_s=float(monitoring_raw.get('overrides_watch_s', 2.0)),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        self.runtime.validate()
        if self.retry.attempts < 1:
            raise ConfigError(f"Invalid retry.attempts: {self.retry.attempts}")
        seen = set()
        for rule in self.momentum:
            rule.validate(self.runtime)
            if rule.instrument in seen:
                raise ConfigError(f"Duplicate momentum rule for {rule.instrument}")
            seen.add(rule.instrument)

    def ticker_for(self, symbol: str) -> Optional[TickerConfig]:
        for ticker in self.tickers:
            if ticker.symbol == symbol:
                return ticker
        return None

    def rule_for(self, symbol: str) -> Optional[MomentumRule]:
        for rule in self.momentum:
            if rule.instrument == symbol:
                return rule
        return None

    def instruments(self) -> List[str]:
        ordered: List[str] = []
        for symbol in [t.symbol for t in self.tickers] + [r.instrument for r in self.momentum]:
            if symbol not in ordered:
                ordered.append(symbol)
        return ordered

    def poll_ms_for(self, symbol: str) -> int:
        rule = self.rule_for(symbol)
        if rule and rule.poll_ms:
            return rule.poll_ms
        return self.runtime.poll_ms


def _section_list(source: Any, name: str) -> List[Dict[str, Any]]:
    if source is None:
        return []
    if isinstance(source, (Config, dict)):
        value = source.get(name)
    else:
        value = getattr(source, name, None)
    return list(value or [])
