import asyncio

from binance_rest import REQUEST_WEIGHTS, BinanceRestClient, parse_exchange_info


EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "status": "TRADING",
            "baseAsset": "BTC",
            "quoteAsset": "USDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.01000000"},
                {"filterType": "LOT_SIZE", "stepSize": "0.00001000"},
            ],
        },
        {
            "symbol": "LUNAUSDT",
            "status": "BREAK",
            "baseAsset": "LUNA",
            "quoteAsset": "USDT",
            "filters": [{"filterType": "PRICE_FILTER", "tickSize": "0"}],
        },
        {"status": "TRADING"},
    ]
}


def test_parse_exchange_info() -> None:
    rules = parse_exchange_info(EXCHANGE_INFO)

    assert set(rules) == {"BTCUSDT", "LUNAUSDT"}
    btc = rules["BTCUSDT"]
    assert btc.is_trading
    assert btc.tick_size == 0.01
    assert btc.step_size == 0.00001
    luna = rules["LUNAUSDT"]
    assert not luna.is_trading
    assert luna.tick_size is None
    assert luna.step_size is None
    assert parse_exchange_info({}) == {}


def test_request_weights_cover_engine_calls() -> None:
    assert set(REQUEST_WEIGHTS) == {"klines", "depth", "exchange_info", "listen_key"}
    assert all(weight >= 1 for weight in REQUEST_WEIGHTS.values())


class RecordingClient:
    def __init__(self):
        self.calls = []

    def get_klines(self, **kwargs):
        self.calls.append(("get_klines", kwargs))
        return [[0, "1", "2", "0.5", "1.5", "10"]]

    def get_order_book(self, **kwargs):
        self.calls.append(("get_order_book", kwargs))
        return {"bids": [], "asks": []}

    def get_exchange_info(self):
        self.calls.append(("get_exchange_info", {}))
        return EXCHANGE_INFO

    def stream_get_listen_key(self):
        self.calls.append(("stream_get_listen_key", {}))
        return "key"

    def stream_keepalive(self, key):
        self.calls.append(("stream_keepalive", {"key": key}))

    def stream_close(self, key):
        self.calls.append(("stream_close", {"key": key}))


def test_rest_client_delegates_to_python_binance() -> None:
    client = RecordingClient()
    rest = BinanceRestClient(client=client)

    async def scenario():
        rows = await rest.get_klines("btcusdt", "1h", 120)
        book = await rest.get_order_book("btcusdt", 20)
        info = await rest.get_exchange_info()
        key = await rest.create_listen_key()
        await rest.keep_alive_listen_key(key)
        await rest.close_listen_key(key)
        return rows, book, info, key

    rows, book, info, key = asyncio.run(scenario())

    assert rows[0][4] == "1.5"
    assert book == {"bids": [], "asks": []}
    assert info is EXCHANGE_INFO
    assert key == "key"
    assert client.calls == [
        ("get_klines", {"symbol": "BTCUSDT", "interval": "1h", "limit": 120}),
        ("get_order_book", {"symbol": "BTCUSDT", "limit": 20}),
        ("get_exchange_info", {}),
        ("stream_get_listen_key", {}),
        ("stream_keepalive", {"key": "key"}),
        ("stream_close", {"key": "key"}),
    ]
