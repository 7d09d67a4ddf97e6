import os
import tempfile

_scratch = tempfile.mkdtemp(prefix='marketplace-tests-')
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['SESSION_SECRET'] = 'test-session-secret'
os.environ['UPLOAD_FOLDER'] = os.path.join(_scratch, 'uploads')
os.environ['SECURITY_LOG_DIR'] = os.path.join(_scratch, 'logs')
os.environ['ENABLE_SCHEDULER'] = 'false'
os.environ['FLASK_ENV'] = 'testing'
for _name in ['STRIPE_SECRET_KEY', 'SIEM_WEBHOOK_URL', 'GOOGLE_OAUTH_CLIENT_ID', 'GOOGLE_CLIENT_ID']:
    os.environ.pop(_name, None)

import pytest
from werkzeug.security import generate_password_hash

import stripe_escrow
from app import app as flask_app, db, User, Gig, Order, login_attempts, api_rate_limits


class FakeStripeClient:
    """In-memory stand-in for StripeEscrowClient that records every call"""

    def __init__(self, available=True):
        self.available = available
        self.intents = {}
        self.calls = []

    def is_available(self):
        return self.available

    def create_payment_intent(self, amount_cents, description, metadata, customer_id=None):
        intent_id = f'pi_test_{len(self.intents) + 1}'
        # Card details are confirmed client-side, so the next retrieve sees an authorization
        self.intents[intent_id] = {'status': 'requires_capture', 'amount': amount_cents, 'metadata': metadata}
        self.calls.append(('create_payment_intent', amount_cents, metadata))
        return {
            'success': True,
            'payment_intent_id': intent_id,
            'client_secret': f'{intent_id}_secret',
            'status': 'requires_payment_method'
        }

    def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(('retrieve_payment_intent', payment_intent_id))
        intent = self.intents.get(payment_intent_id)
        if not intent:
            return {'success': False, 'error': 'No such payment_intent', 'error_code': 'resource_missing'}
        return {
            'success': True,
            'payment_intent_id': payment_intent_id,
            'status': intent['status'],
            'amount': intent['amount'],
            'metadata': intent['metadata']
        }

    def capture_payment_intent(self, payment_intent_id):
        self.calls.append(('capture_payment_intent', payment_intent_id))
        self.intents[payment_intent_id]['status'] = 'succeeded'
        return {'success': True, 'payment_intent_id': payment_intent_id, 'status': 'succeeded', 'charge_id': 'ch_test_1'}

    def cancel_payment_intent(self, payment_intent_id):
        self.calls.append(('cancel_payment_intent', payment_intent_id))
        self.intents[payment_intent_id]['status'] = 'canceled'
        return {'success': True, 'payment_intent_id': payment_intent_id, 'status': 'canceled'}

    def create_transfer(self, amount_cents, destination, description, metadata=None):
        self.calls.append(('create_transfer', amount_cents, destination))
        return {'success': True, 'transfer_id': 'tr_test_1'}

    def create_refund(self, payment_intent_id, metadata=None):
        self.calls.append(('create_refund', payment_intent_id))
        return {'success': True, 'refund_id': 're_test_1', 'status': 'succeeded'}

    def call_names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    login_attempts.clear()
    api_rate_limits.clear()
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make(name, role='client', email=None, password='Secret123', **fields):
        with app.app_context():
            user = User(
                name=name,
                email=email or f"{name.split()[0].lower()}@example.com",
                password_hash=generate_password_hash(password) if password else None,
                role=role,
                **fields
            )
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make


@pytest.fixture
def login_as(app):
    def _login(user_id):
        user_client = app.test_client()
        with user_client.session_transaction() as sess:
            sess['user_id'] = user_id
        return user_client
    return _login


@pytest.fixture
def make_gig(app):
    def _make(seller_id, title='I will design a modern logo', price=1750, delivery_time=3, **fields):
        with app.app_context():
            gig = Gig(
                title=title,
                description='Three concepts and source files',
                category='design',
                price=price,
                delivery_time=delivery_time,
                seller_id=seller_id,
                **fields
            )
            db.session.add(gig)
            db.session.commit()
            return gig.id
    return _make


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripeClient()
    monkeypatch.setattr(stripe_escrow, 'get_stripe_client', lambda: fake)
    return fake


class Marketplace:
    """A buyer, a seller with one gig, and shortcuts through the order lifecycle"""

    def __init__(self, app, login_as, buyer_id, seller_id, gig_id):
        self.app = app
        self.buyer_id = buyer_id
        self.seller_id = seller_id
        self.gig_id = gig_id
        self.buyer = login_as(buyer_id)
        self.seller = login_as(seller_id)

    def create_order(self, **payload):
        resp = self.buyer.post('/api/orders', json=dict({'gig_id': self.gig_id}, **payload))
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()['order']['id']

    def paid_order(self):
        order_id = self.create_order()
        resp = self.buyer.post(f'/api/orders/{order_id}/payment', json={'payment_method': 'card'})
        assert resp.status_code == 200, resp.get_json()
        return order_id

    def delivered_order(self, note='First draft attached'):
        order_id = self.paid_order()
        resp = self.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': note})
        assert resp.status_code == 200, resp.get_json()
        return order_id

    def order(self, order_id):
        with self.app.app_context():
            return db.session.get(Order, order_id).to_dict(detail=True)

    def update_order(self, order_id, **fields):
        with self.app.app_context():
            order = db.session.get(Order, order_id)
            for key, value in fields.items():
                setattr(order, key, value)
            db.session.commit()


@pytest.fixture
def market(app, login_as, make_user, make_gig):
    seller_id = make_user('Sam Seller', role='freelancer')
    buyer_id = make_user('Bea Buyer', role='client')
    gig_id = make_gig(seller_id)
    return Marketplace(app, login_as, buyer_id, seller_id, gig_id)
