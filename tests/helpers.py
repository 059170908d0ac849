import os
from decimal import Decimal
import httpx
import orjson
from backend.auth.dependencies import Principal
from backend.auth.utils import create_access_token
from backend.inventory import repository as inv_repo
from backend.orders import repository as order_repo
from backend.orders.models import OrderLineIn
from backend.orders.services import place_product_order, place_service_order, quote_service_order
from backend.payments import gateway
from backend.payments import repository as pay_repo
from backend.schema.full_schema import PaymentOption, Product

url_prefix = "/api/v1"
webhook_path = "/api/v1/payments/webhook"

CUSTOMER_ID = 101
OTHER_CUSTOMER_ID = 202
ADMIN_ID = 1
WEBHOOK_SECRET = os.environ.get("PAYMONGO_WEBHOOK_SECRET", "whsk_test_secret")

customer = Principal(user_id=CUSTOMER_ID)
other_customer = Principal(user_id=OTHER_CUSTOMER_ID)
admin = Principal(user_id=ADMIN_ID, roles=frozenset({"admin"}))


def auth_headers(user_id: int, roles=()):
    return {"Authorization": f"Bearer {create_access_token(user_id, roles)}"}

#--------------------------------------------------------------------------------------------------------
# data


async def make_product(session, *, name="Linen Shirt", price="500.00", sizes=None, quantity=0, threshold=2):
    product = Product(name=name, price=Decimal(price))
    session.add(product)
    await session.flush()
    item = await inv_repo.create_inventory_item(
        session, name=name, product_id=product.id, quantity=quantity, sizes=dict(sizes or {}),
        low_stock_threshold=threshold)
    await inv_repo.sync_product_count(session, item.id)
    await session.commit()
    return product.id, item.id


async def make_product_order(session, lines, user=customer, voucher_code=None):
    items = [OrderLineIn(**line) for line in lines]
    order, _ = await place_product_order(session, user, items, voucher_code)
    await session.commit()
    return order.id


async def make_service_order(session, lines, *, subtotal="1000", delivery_fee="100",
                             payment_option=PaymentOption.FULL, user=customer):
    items = [OrderLineIn(**line) for line in lines]
    order, _ = await place_service_order(session, user, "custom embroidered barong", items, payment_option)
    await quote_service_order(session, order.id, Decimal(subtotal), Decimal(delivery_fee))
    await session.commit()
    return order.id


async def open_session(session, order_id, session_id, amount, purpose="full"):
    """What a successful checkout leaves behind: the order points at the session and a PENDING payment row."""
    await order_repo.set_payment_session(session, order_id, session_id)
    await pay_repo.create_payment(session, order_id=order_id, provider_session_id=session_id, purpose=purpose,
                                  amount=Decimal(str(amount)), checkout_url=f"https://checkout.test/{session_id}")
    await session.commit()


async def fetch_order(session, order_id):
    order = await order_repo.get_order(session, order_id)
    await session.commit()
    return order


async def size_map(session, inventory_id):
    sizes = (await inv_repo.size_maps_for(session, [inventory_id])).get(inventory_id, {})
    await session.commit()
    return sizes

#--------------------------------------------------------------------------------------------------------
# gateway payloads


def session_resource(session_id, paid_centavos=None, reference=None, status="paid", payment_id="pay_1"):
    payments = []
    if paid_centavos is not None:
        payments.append({"id": payment_id, "type": "payment",
                         "attributes": {"amount": paid_centavos, "status": status}})
    return {
        "id": session_id,
        "type": "checkout_session",
        "attributes": {
            "status": "active",
            "reference_number": reference,
            "checkout_url": f"https://checkout.test/{session_id}",
            "payments": payments,
            "metadata": {},
        },
    }


def webhook_event(event_id, resource, event_type="checkout_session.payment.paid"):
    return {
        "data": {
            "id": event_id,
            "type": "event",
            "attributes": {"type": event_type, "livemode": False, "data": resource},
        }
    }


def signed(payload, secret=WEBHOOK_SECRET):
    raw = orjson.dumps(payload)
    return raw, {"Content-Type": "application/json",
                 "X-Paymongo-Signature": gateway.compute_signature(raw, secret)}


class FakeGateway:
    """httpx.MockTransport backed PayMongo: records requests, serves canned sessions."""

    def __init__(self):
        self.sessions = {}
        self.requests = []
        self.fail_with = None
        self._seq = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"errors": [{"detail": "boom"}]})
        if request.method == "POST" and request.url.path.endswith("/checkout_sessions"):
            self._seq += 1
            session_id = f"cs_test_{self._seq}"
            attrs = orjson.loads(request.content)["data"]["attributes"]
            self.sessions[session_id] = session_resource(session_id, reference=attrs["reference_number"])
            return httpx.Response(200, json={"data": self.sessions[session_id]})
        session_id = request.url.path.rsplit("/", 1)[-1]
        if session_id not in self.sessions:
            return httpx.Response(404, json={"errors": [{"code": "resource_not_found"}]})
        return httpx.Response(200, json={"data": self.sessions[session_id]})

    def pay(self, session_id, centavos, status="paid"):
        ref = self.sessions[session_id]["attributes"]["reference_number"]
        self.sessions[session_id] = session_resource(session_id, centavos, reference=ref, status=status)

    def client(self):
        return gateway.PayMongoClient(secret_key="sk_test", base_url="https://api.paymongo.test/v1",
                                      transport=httpx.MockTransport(self.handler))
