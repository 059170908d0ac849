from backend.payments.gateway import PayMongoClient

_client = None


def get_gateway_client() -> PayMongoClient:
    global _client
    if _client is None:
        _client = PayMongoClient()
    return _client
