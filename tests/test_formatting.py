from formatting import format_crypto_amount, format_currency, format_duration


def test_format_currency():
    assert format_currency(1234.5) == "$1,234.50"
    assert format_currency(None) == "$0.00"
    assert format_currency(3, decimals=0, prefix="") == "3"


def test_format_crypto_amount():
    assert format_crypto_amount(0.123456789, "BTC") == "0.12345679"
    assert format_crypto_amount(1.5, "ETH") == "1.5"
    assert format_crypto_amount(1000, "USDT") == "1,000"
    assert format_crypto_amount(2.123456, "SOL") == "2.1235"
    assert format_crypto_amount(None, "BTC") == "0"


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(45) == "45s"
    assert format_duration(120) == "2m"
    assert format_duration(125) == "2m 5s"
