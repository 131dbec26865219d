import math

import pytest

from errors import OutOfRangeRound
from models import PortfolioValuation, PriceRecord, PriceSource, WalletAsset
from pricing import (
    calculate_change,
    merge_price_tables,
    organize_prices_by_round,
    resolve_price,
    stable_rate,
    valuate,
)


def test_current_round_price_wins():
    table = {1: {"BTC": 50000.0}, 2: {"BTC": 51000.0}}
    assert resolve_price(table, 2, "BTC", 1.0) == (51000.0, PriceSource.CURRENT_ROUND)


def test_nearest_round_used_when_missing():
    table = {1: {"BTC": 100.0}, 4: {"BTC": 400.0}, 6: {"BTC": 600.0}}
    assert resolve_price(table, 5, "BTC", 1.0) == (400.0, PriceSource.NEAREST_ROUND)


def test_nearest_round_tie_goes_to_lower_round():
    table = {1: {"ETH": 10.0}, 3: {"ETH": 30.0}}
    assert resolve_price(table, 2, "ETH", 0.0) == (10.0, PriceSource.NEAREST_ROUND)


def test_zero_price_counts_as_missing():
    table = {2: {"ETH": 0.0}, 3: {"ETH": 33.0}}
    assert resolve_price(table, 2, "ETH", 5.0) == (33.0, PriceSource.NEAREST_ROUND)


def test_spot_then_default():
    assert resolve_price({}, 1, "XRP", 0.5) == (0.5, PriceSource.SPOT)
    assert resolve_price({1: {"XRP": 0.0}}, 1, "XRP", 0.0) == (1.0, PriceSource.DEFAULT)


def test_round_below_one_is_contract_violation():
    with pytest.raises(OutOfRangeRound):
        resolve_price({}, 0, "BTC", 1.0)


def test_organize_and_merge_tables():
    scenario = organize_prices_by_round([
        PriceRecord("BTC", 1, 100.0),
        PriceRecord("BTC", 2, 110.0),
        PriceRecord("ETH", 1, 10.0),
    ])
    template = organize_prices_by_round([PriceRecord("BTC", 2, 120.0), PriceRecord("BTC", 3, 130.0)])

    merged = merge_price_tables(scenario, template)
    assert merged == {1: {"BTC": 100.0, "ETH": 10.0}, 2: {"BTC": 120.0}, 3: {"BTC": 130.0}}
    # inputs untouched
    assert scenario[2] == {"BTC": 110.0}


def test_valuate_empty_wallet():
    assert valuate([], {1: {"BTC": 1.0}}, 3) == PortfolioValuation(per_asset=[], total_value=0, total_stable_value=0)


def test_valuate_with_stablecoin_spot_prices():
    assets = [
        WalletAsset(asset_code="BTC", name="Bitcoin", spot_price=50000, amount=1),
        WalletAsset(asset_code="USDT", name="Tether", spot_price=1, amount=100),
    ]
    v = valuate(assets, {}, 1)
    btc, usdt = v.per_asset
    assert (btc.price, btc.source) == (50000, PriceSource.SPOT)
    assert (usdt.price, usdt.source) == (1, PriceSource.SPOT)
    assert v.total_value == 50100
    assert v.total_stable_value == 50100


def test_valuate_converts_to_stable_units():
    assets = [
        WalletAsset(asset_code="ETH", name="Ethereum", spot_price=0, amount=2),
        WalletAsset(asset_code="USDC", name="USD Coin", spot_price=1, amount=10),
    ]
    table = {1: {"ETH": 3000.0, "USDC": 2.0}}
    v = valuate(assets, table, 1)
    assert v.per_asset[0].value == 6000.0
    assert v.per_asset[0].stable_value == 3000.0
    assert v.total_value == 6020.0
    assert v.total_stable_value == 3010.0


def test_stable_rate_defaults_to_one_without_stablecoin():
    assets = [WalletAsset(asset_code="BTC", name="Bitcoin", spot_price=1, amount=1)]
    assert stable_rate(assets, {}, 1) == 1.0


def test_non_finite_values_are_summed_as_zero():
    assets = [
        WalletAsset(asset_code="BTC", name="Bitcoin", spot_price=10, amount=1),
        WalletAsset(asset_code="BAD", name="Broken", spot_price=1, amount=float("inf")),
    ]
    v = valuate(assets, {}, 1)
    assert v.total_value == 10
    assert math.isfinite(v.total_stable_value)


def test_negative_amount_rejected():
    with pytest.raises(ValueError):
        WalletAsset(asset_code="BTC", name="Bitcoin", spot_price=1, amount=-1)


def test_calculate_change():
    up = calculate_change(110, 100)
    assert up.direction == "up"
    assert up.percentage == pytest.approx(10.0)
    assert up.formatted == "+10.00 (10.00%)"

    down = calculate_change(90, 100)
    assert down.direction == "down"
    assert down.formatted == "-10.00 (10.00%)"

    assert calculate_change(5, 5).direction == "none"
    assert calculate_change(5, None).direction == "none"
    assert calculate_change(5, 0).percentage == 0.0
