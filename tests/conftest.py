import hashlib
import hmac
import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from thrifthub.config import Settings
from thrifthub.database import Base, build_engine, build_session_factory
from thrifthub.main import create_app
from thrifthub.models import Cart, CartItem, Product, User, UserRole
from thrifthub.notifications import EmailNotifier
from thrifthub.paystack import (
    ChargeResult,
    InitializedTransaction,
    PaystackGateway,
    VerifiedTransaction,
)

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_thrifthub.db"
engine = build_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = build_session_factory(engine)

PAYSTACK_SECRET = "sk_test_secret"
JWT_SECRET = "test-jwt-secret"
INTERNAL_KEY = "internal-test-key"

TEST_SETTINGS = Settings(
    database_url=SQLALCHEMY_DATABASE_URL,
    paystack_secret_key=PAYSTACK_SECRET,
    jwt_secret=JWT_SECRET,
    internal_api_key=INTERNAL_KEY,
    log_level="DEBUG",
)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway(mocker):
    async def fake_initialize(email, amount, reference, metadata=None, channels=None):
        return InitializedTransaction(
            authorization_url=f"https://checkout.paystack.com/{reference}",
            access_code="access_test",
            reference=reference,
        )

    fake = mocker.Mock(spec=PaystackGateway)
    fake.initialize = mocker.AsyncMock(side_effect=fake_initialize)
    fake.verify = mocker.AsyncMock()
    fake.charge_saved_authorization = mocker.AsyncMock()
    # Signature checks use the real HMAC implementation
    fake.verify_signature.side_effect = PaystackGateway(None, PAYSTACK_SECRET).verify_signature
    return fake


@pytest.fixture
def notifier(mocker):
    fake = mocker.Mock(spec=EmailNotifier)
    fake.send_payment_confirmation = mocker.AsyncMock()
    fake.send_payment_failure = mocker.AsyncMock()
    return fake


@pytest.fixture
def client(gateway, notifier):
    fastapi_app = create_app(TEST_SETTINGS, gateway=gateway, notifier=notifier)
    with TestClient(fastapi_app) as c:
        yield c


def make_token(user_id, role="STUDENT"):
    return jwt.encode({"sub": user_id, "role": role}, JWT_SECRET, algorithm="HS256")


def auth_headers(user_id, role="STUDENT"):
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def sign(payload: bytes) -> str:
    return hmac.new(PAYSTACK_SECRET.encode(), payload, hashlib.sha512).hexdigest()


def webhook_body(event, reference, amount, txn_id=1001, authorization_code="AUTH_test", customer_code="CUS_test"):
    return json.dumps(
        {
            "event": event,
            "data": {
                "id": txn_id,
                "status": "success" if event == "charge.success" else "failed",
                "reference": reference,
                "amount": amount,
                "authorization": {"authorization_code": authorization_code, "reusable": True},
                "customer": {"customer_code": customer_code, "email": "ama@students.example"},
            },
        }
    ).encode()


def seed_user(db, email="ama@students.example", role=UserRole.STUDENT):
    user = User(email=email, first_name="Ama", last_name="Mensah", role=role)
    db.add(user)
    db.commit()
    return user.id


def seed_product(db, title="Vintage denim jacket", price="40.00", stock=5, is_active=True):
    product = Product(title=title, price=Decimal(price), stock=stock, is_active=is_active)
    db.add(product)
    db.commit()
    return product.id


def fill_cart(db, user_id, lines):
    cart = db.query(Cart).filter_by(user_id=user_id).one_or_none()
    if cart is None:
        cart = Cart(user_id=user_id)
        db.add(cart)
    cart.items.extend(CartItem(product_id=pid, quantity=qty) for pid, qty in lines)
    db.commit()
    return cart.id


def charge_result(succeeded=True, reference="TXN-PAY2", reason=None, transaction_id="2002"):
    return ChargeResult(
        succeeded=succeeded,
        gateway_reference=reference,
        failure_reason=reason,
        transaction_id=transaction_id,
    )


def verified(reference, amount_minor, status="success", transaction_id="1001"):
    return VerifiedTransaction(
        status=status,
        reference=reference,
        amount_minor=amount_minor,
        transaction_id=transaction_id,
        authorization_code="AUTH_test",
        customer_code="CUS_test",
    )
