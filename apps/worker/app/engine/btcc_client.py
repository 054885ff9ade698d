from apps.worker.app.engine.binance_client import BinanceGateway


class BtccGateway(BinanceGateway):
    """BTCC speaks the same signed query protocol under /api/v1."""

    name = "BTCC"
    api_prefix = "/api/v1"
