from __future__ import annotations
import math
from typing import Iterable, List, Optional, Tuple

from errors import OutOfRangeRound
from models import (
    AssetValuation,
    PortfolioValuation,
    PriceChange,
    PriceRecord,
    PriceSource,
    RoundPriceTable,
    WalletAsset,
)

# Recognized reference stablecoins, first match in wallet order wins.
STABLECOIN_CODES = ("USDT", "USDC", "USD")

DEFAULT_PRICE = 1.0


def _finite_or_zero(x: float) -> float:
    try:
        x = float(x)
    except (TypeError, ValueError):
        return 0.0
    return x if math.isfinite(x) else 0.0


# ---------- Price tables ----------
def organize_prices_by_round(records: Iterable[PriceRecord]) -> RoundPriceTable:
    table: RoundPriceTable = {}
    for rec in records:
        table.setdefault(int(rec.round_number), {})[rec.asset_code] = float(rec.price)
    return table


def merge_price_tables(*tables: RoundPriceTable) -> RoundPriceTable:
    """
    Merge tables left to right into a new table.
    Later tables overwrite earlier ones per (round, asset) pair; inputs are not modified.
    """
    merged: RoundPriceTable = {}
    for table in tables:
        for rnd, prices in table.items():
            merged.setdefault(rnd, {}).update(prices)
    return merged


# ---------- Price Resolver ----------
def resolve_price(
    table: RoundPriceTable,
    round_number: int,
    asset_code: str,
    spot_price: float,
) -> Tuple[float, PriceSource]:
    """
    Price of `asset_code` in `round_number`, with its provenance.

    Fallback chain:
      1) the round's own price, if > 0
      2) the nearest round (by distance, lower round on ties) holding a price > 0
      3) the spot price, if > 0
      4) 1.0
    A missing price and a zero price are treated the same way.
    """
    if round_number < 1:
        raise OutOfRangeRound(f"Round {round_number} is out of range (rounds start at 1)")

    current = table.get(round_number, {}).get(asset_code)
    if current is not None and _finite_or_zero(current) > 0:
        return float(current), PriceSource.CURRENT_ROUND

    for rnd in sorted(table, key=lambda r: (abs(r - round_number), r)):
        price = _finite_or_zero(table[rnd].get(asset_code, 0))
        if price > 0:
            return price, PriceSource.NEAREST_ROUND

    spot = _finite_or_zero(spot_price)
    if spot > 0:
        return spot, PriceSource.SPOT

    return DEFAULT_PRICE, PriceSource.DEFAULT


# ---------- Portfolio Valuator ----------
def find_stablecoin(assets: List[WalletAsset]) -> Optional[WalletAsset]:
    for asset in assets:
        if asset.asset_code in STABLECOIN_CODES:
            return asset
    return None


def stable_rate(assets: List[WalletAsset], table: RoundPriceTable, round_number: int) -> float:
    stable = find_stablecoin(assets)
    if stable is None:
        return 1.0
    rate, _ = resolve_price(table, round_number, stable.asset_code, stable.spot_price)
    # never divide by zero
    if rate <= 0:
        rate = 1.0
    return rate


def valuate(assets: List[WalletAsset], table: RoundPriceTable, round_number: int) -> PortfolioValuation:
    """Per-asset and total value of a wallet in native and stable-unit terms for one round."""
    if not assets:
        return PortfolioValuation()

    rate = stable_rate(assets, table, round_number)

    per_asset: List[AssetValuation] = []
    for asset in assets:
        price, source = resolve_price(table, round_number, asset.asset_code, asset.spot_price)
        value = _finite_or_zero(asset.amount) * price
        per_asset.append(AssetValuation(
            asset=asset,
            price=price,
            value=value,
            stable_value=value / rate,
            source=source,
        ))

    total_value = sum(_finite_or_zero(a.value) for a in per_asset)
    total_stable = sum(_finite_or_zero(a.stable_value) for a in per_asset)
    return PortfolioValuation(per_asset=per_asset, total_value=total_value, total_stable_value=total_stable)


# ---------- Round-over-round change ----------
def calculate_change(current: Optional[float], previous: Optional[float]) -> PriceChange:
    if current is None or previous is None:
        return PriceChange(amount=0.0, percentage=0.0, direction="none")
    current, previous = float(current), float(previous)
    if current == previous:
        return PriceChange(amount=0.0, percentage=0.0, direction="none")

    amount = current - previous
    pct = (amount / previous) * 100 if previous != 0 else 0.0
    direction = "up" if amount > 0 else "down"
    sign = "+" if direction == "up" else ""
    return PriceChange(
        amount=amount,
        percentage=pct,
        direction=direction,
        formatted=f"{sign}{amount:.2f} ({abs(pct):.2f}%)",
    )
