"""Technical-indicator signal over 1-minute Binance candles.

Each indicator adds or subtracts a fixed vote from the score:

  - EMA(5)/EMA(10) alignment with price      ±0.25
  - RSI(7) momentum in the mid band          ±0.25
  - RSI(7) extremes (contrarian)             ±0.15
  - MACD(5, 13) histogram direction          ±0.25
  - price vs. VWAP                           ±0.15
  - volume spike in the direction of price   ±0.10

The sum is clamped to [-1, 1].
"""

from __future__ import annotations

from updown.connectors.binance import BINANCE_SYMBOLS, BinanceClient, Candle
from updown.observability.logger import get_logger
from updown.signals.models import SignalResult, clamp

log = get_logger(__name__)

_RSI_PERIOD = 7
_MACD_FAST = 5
_MACD_SLOW = 13
# No MACD history is kept, so the signal line is approximated from the line itself
_MACD_SIGNAL_RATIO = 0.7
_VOLUME_LOOKBACK = 20
_VOLUME_SPIKE_MULT = 2.0


# ── Indicators ───────────────────────────────────────────────────────

def ema(prices: list[float], period: int) -> float:
    if not prices:
        return 0.0
    k = 2 / (period + 1)
    value = prices[0]
    for price in prices[1:]:
        value = price * k + value * (1 - k)
    return value


def rsi(prices: list[float], period: int = _RSI_PERIOD) -> float:
    """Wilder-smoothed RSI; 50 when there is not enough history."""
    if len(prices) < period + 1:
        return 50.0
    gains = losses = 0.0
    for i in range(1, period + 1):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period
    for i in range(period + 1, len(prices)):
        change = prices[i] - prices[i - 1]
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period
    if avg_loss == 0:
        return 100.0
    return 100 - 100 / (1 + avg_gain / avg_loss)


def macd_histogram(prices: list[float]) -> float:
    if len(prices) < _MACD_SLOW:
        return 0.0
    line = ema(prices, _MACD_FAST) - ema(prices, _MACD_SLOW)
    return line - line * _MACD_SIGNAL_RATIO


def vwap(candles: list[Candle]) -> float:
    volume = sum(c.volume for c in candles)
    if volume <= 0:
        return 0.0
    return sum((c.high + c.low + c.close) / 3 * c.volume for c in candles) / volume


def volume_spike(volumes: list[float]) -> bool:
    if len(volumes) < _VOLUME_LOOKBACK + 1:
        return False
    window = volumes[-(_VOLUME_LOOKBACK + 1):-1]
    return volumes[-1] > sum(window) / _VOLUME_LOOKBACK * _VOLUME_SPIKE_MULT


def score_candles(candles: list[Candle]) -> tuple[float, dict]:
    """Score a candle series. Returns (score, details)."""
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    price = closes[-1]

    ema5 = ema(closes, 5)
    ema10 = ema(closes, 10)
    rsi_now = rsi(closes)
    rsi_rising = rsi_now > rsi(closes[:-1])
    hist = macd_histogram(closes)
    hist_rising = hist > macd_histogram(closes[:-1])
    vwap_now = vwap(candles)
    spike = volume_spike(volumes)

    score = 0.0
    signals: list[str] = []

    if price > ema5 > ema10:
        score += 0.25
        signals.append("ema_bullish")
    elif price < ema5 < ema10:
        score -= 0.25
        signals.append("ema_bearish")

    if 40 <= rsi_now <= 65 and rsi_rising:
        score += 0.25
        signals.append("rsi_bullish_momentum")
    elif 35 <= rsi_now <= 60 and not rsi_rising:
        score -= 0.25
        signals.append("rsi_bearish_momentum")

    if rsi_now < 30:
        score += 0.15
        signals.append("rsi_oversold")
    elif rsi_now > 70:
        score -= 0.15
        signals.append("rsi_overbought")

    if hist > 0 and hist_rising:
        score += 0.25
        signals.append("macd_bullish")
    elif hist < 0 and not hist_rising:
        score -= 0.25
        signals.append("macd_bearish")

    if price > vwap_now:
        score += 0.15
        signals.append("above_vwap")
    elif price < vwap_now:
        score -= 0.15
        signals.append("below_vwap")

    if spike and len(closes) >= 2:
        if closes[-1] - closes[-2] > 0:
            score += 0.10
            signals.append("volume_spike_up")
        else:
            score -= 0.10
            signals.append("volume_spike_down")

    details = {
        "price": price,
        "ema5": ema5,
        "ema10": ema10,
        "rsi": round(rsi_now, 2),
        "macd_histogram": hist,
        "vwap": vwap_now,
        "volume_spike": spike,
        "signals": signals,
    }
    return clamp(score), details


class TechnicalSignal:
    """Reads recent candles for the market's coin and scores them."""

    name = "technical"

    def __init__(self, client: BinanceClient, interval: str = "1m", limit: int = 100):
        self._client = client
        self._interval = interval
        self._limit = limit

    async def analyze(self, coin: str) -> SignalResult:
        symbol = BINANCE_SYMBOLS.get((coin or "").lower())
        if not symbol:
            return SignalResult.failed(f"unsupported coin: {coin!r}")

        candles = await self._client.get_klines(symbol, self._interval, self._limit)
        if len(candles) < 2:
            return SignalResult.failed(f"not enough candles for {symbol}")

        score, details = score_candles(candles)
        details["coin"] = coin
        log.debug("technical.scored", coin=coin, score=round(score, 3), signals=details["signals"])
        return SignalResult(score=score, details=details)
