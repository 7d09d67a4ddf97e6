from datetime import datetime, timedelta

import app as marketplace
from app import db, User, Order
from stripe_escrow import split_order_amount


def give_seller_connected_account(app, seller_id, account_id='acct_seller_1'):
    with app.app_context():
        db.session.get(User, seller_id).stripe_account_id = account_id
        db.session.commit()


def card_paid_order(market):
    """Order paid through the intent / confirm flow, funds captured into escrow"""
    order_id = market.create_order()
    intent = market.buyer.post('/api/payments/create-payment-intent', json={'order_id': order_id})
    assert intent.status_code == 200, intent.get_json()
    confirm = market.buyer.post('/api/payments/confirm-payment',
                                json={'payment_intent_id': intent.get_json()['payment_intent_id']})
    assert confirm.status_code == 200, confirm.get_json()
    return order_id


def test_split_order_amount():
    assert split_order_amount(21) == {'platform_fee': 105, 'seller_amount': 1995}
    assert split_order_amount(50) == {'platform_fee': 250, 'seller_amount': 4750}


def test_payment_intent_unavailable_without_stripe(market):
    order_id = market.create_order()
    resp = market.buyer.post('/api/payments/create-payment-intent', json={'order_id': order_id})
    assert resp.status_code == 503

    resp = market.buyer.post('/api/payments/confirm-payment', json={'payment_intent_id': 'pi_missing'})
    assert resp.status_code == 503


def test_intent_and_confirm_hold_funds_in_escrow(market, fake_stripe):
    order_id = market.create_order()

    resp = market.buyer.post('/api/payments/create-payment-intent', json={'order_id': order_id})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['payment_intent_id'] == 'pi_test_1'
    assert body['client_secret'] == 'pi_test_1_secret'

    _, amount_cents, metadata = fake_stripe.calls[0]
    assert amount_cents == 2200
    assert metadata['orderId'] == str(order_id)
    assert metadata['sellerAmount'] == '1995'
    assert metadata['platformFee'] == '105'
    assert market.order(order_id)['payment_status'] == 'processing'

    resp = market.buyer.post('/api/payments/confirm-payment', json={'payment_intent_id': 'pi_test_1'})
    assert resp.status_code == 200
    order = resp.get_json()['order']
    assert order['status'] == 'active'
    assert order['payment_status'] == 'paid'
    assert fake_stripe.call_names() == ['create_payment_intent', 'retrieve_payment_intent', 'capture_payment_intent']

    again = market.buyer.post('/api/payments/confirm-payment', json={'payment_intent_id': 'pi_test_1'})
    assert again.status_code == 400


def test_intent_rejected_for_other_users_and_paid_orders(market, fake_stripe):
    order_id = market.create_order()
    assert market.seller.post('/api/payments/create-payment-intent', json={'order_id': order_id}).status_code == 403
    assert market.buyer.post('/api/payments/create-payment-intent', json={'order_id': 9999}).status_code == 404

    paid_id = market.paid_order()
    assert market.buyer.post('/api/payments/create-payment-intent', json={'order_id': paid_id}).status_code == 400


def test_release_transfers_seller_share(app, market, fake_stripe):
    give_seller_connected_account(app, market.seller_id)
    order_id = card_paid_order(market)

    assert market.buyer.post(f'/api/payments/release/{order_id}').status_code == 400

    market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Done'})
    assert market.seller.post(f'/api/payments/release/{order_id}').status_code == 403

    resp = market.buyer.post(f'/api/payments/release/{order_id}')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['release'] == {'transfer_id': 'tr_test_1', 'seller_amount': 19.95, 'platform_fee': 1.05}
    assert body['order']['status'] == 'completed'
    assert body['order']['payment_status'] == 'released'
    assert ('create_transfer', 1995, 'acct_seller_1') in fake_stripe.calls

    assert market.buyer.post(f'/api/payments/release/{order_id}').status_code == 400


def test_rejected_transfer_leaves_order_in_escrow(app, market, fake_stripe):
    give_seller_connected_account(app, market.seller_id)
    order_id = card_paid_order(market)
    market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Done'})

    fake_stripe.create_transfer = lambda **kwargs: {'success': False, 'error': 'Insufficient platform balance'}
    resp = market.buyer.put(f'/api/orders/{order_id}/accept', json={})
    assert resp.status_code == 502

    order = market.order(order_id)
    assert order['status'] == 'delivered'
    assert order['payment_status'] == 'paid'


def test_release_without_connected_account_settles_internally(market, fake_stripe):
    order_id = card_paid_order(market)
    market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Done'})

    resp = market.buyer.post(f'/api/payments/release/{order_id}')
    assert resp.status_code == 200
    assert resp.get_json()['release']['transfer_id'] is None
    assert 'create_transfer' not in fake_stripe.call_names()


def test_refund_captured_payment(market, fake_stripe):
    order_id = card_paid_order(market)

    resp = market.buyer.post(f'/api/payments/refund/{order_id}', json={'reason': 'Seller unresponsive'})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['refund_id'] == 're_test_1'
    assert body['order']['payment_status'] == 'refunded'
    assert body['order']['status'] == 'cancelled'
    assert fake_stripe.call_names()[-1] == 'create_refund'

    assert market.buyer.post(f'/api/payments/refund/{order_id}').status_code == 400


def test_refund_uncaptured_authorization_cancels_intent(market, fake_stripe):
    order_id = market.create_order()
    market.buyer.post('/api/payments/create-payment-intent', json={'order_id': order_id})

    resp = market.buyer.post(f'/api/payments/refund/{order_id}')
    assert resp.status_code == 200
    assert fake_stripe.call_names()[-1] == 'cancel_payment_intent'


def test_refund_rejected_for_unpaid_and_released(market):
    pending_id = market.create_order()
    assert market.buyer.post(f'/api/payments/refund/{pending_id}').status_code == 400

    released_id = market.delivered_order()
    market.buyer.put(f'/api/orders/{released_id}/accept', json={})
    resp = market.buyer.post(f'/api/payments/refund/{released_id}')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Released payments cannot be refunded'


def test_earnings_and_withdrawals(market):
    order_id = market.delivered_order()
    market.buyer.put(f'/api/orders/{order_id}/accept', json={})
    market.paid_order()

    earnings = market.seller.get('/api/payments/seller/earnings').get_json()
    assert earnings['total_earnings'] == 19.95
    assert earnings['pending_earnings'] == 19.95
    assert earnings['available_balance'] == 19.95
    assert earnings['completed_orders'] == 1
    assert earnings['recent_orders'][0]['net_amount'] == 19.95

    assert market.seller.post('/api/payments/withdraw', json={'amount': 'lots'}).status_code == 400
    assert market.seller.post('/api/payments/withdraw', json={'amount': 0}).status_code == 400

    resp = market.seller.post('/api/payments/withdraw', json={'amount': 10})
    assert resp.status_code == 200
    assert resp.get_json()['available_balance'] == 9.95
    assert resp.get_json()['withdrawal']['status'] == 'completed'

    resp = market.seller.post('/api/payments/withdraw', json={'amount': 20})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Insufficient balance'

    assert market.seller.get('/api/payments/earnings').get_json()['available_balance'] == 9.95


def test_payment_history_by_role(market):
    market.paid_order()
    market.create_order()

    seller_history = market.seller.get('/api/payments/history').get_json()
    assert seller_history['total'] == 1
    assert seller_history['payments'][0]['net_amount'] == 19.95

    buyer_history = market.buyer.get('/api/payments/history?status=pending').get_json()
    assert buyer_history['total'] == 1


def test_payment_notifications_feed(market):
    market.paid_order()
    feed = market.seller.get('/api/payments/notifications').get_json()['notifications']
    assert len(feed) == 1
    assert 'received in escrow' in feed[0]['message']


def test_payment_methods(market):
    seller = market.seller
    assert seller.post('/api/payments/methods', json={'type': 'crypto'}).status_code == 400
    assert seller.post('/api/payments/methods', json={'type': 'bank', 'account_name': 'Sam'}).status_code == 400

    bank = seller.post('/api/payments/methods', json={
        'type': 'bank',
        'account_name': 'Sam Seller',
        'account_number': '000123456789',
        'routing_number': '021000021',
        'bank_name': 'First Bank'
    })
    assert bank.status_code == 201
    bank = bank.get_json()['payment_method']
    assert bank['is_primary'] is True
    assert bank['account_number'] == '****6789'

    paypal = seller.post('/api/payments/methods', json={'type': 'paypal', 'email': 'sam@example.com'})
    assert paypal.status_code == 201
    paypal = paypal.get_json()['payment_method']
    assert paypal['is_primary'] is False

    assert seller.delete(f"/api/payments/methods/{bank['id']}").status_code == 400
    assert market.buyer.put(f"/api/payments/methods/{paypal['id']}/primary").status_code == 404

    resp = seller.put(f"/api/payments/methods/{paypal['id']}/primary")
    assert resp.status_code == 200
    methods = seller.get('/api/payments/methods').get_json()['payment_methods']
    assert [m['id'] for m in methods] == [paypal['id'], bank['id']]
    assert [m['is_primary'] for m in methods] == [True, False]

    resp = seller.put(f"/api/payments/methods/{bank['id']}", json={'bank_name': 'Second Bank'})
    assert resp.status_code == 200
    assert resp.get_json()['payment_method']['bank_name'] == 'Second Bank'

    assert seller.delete(f"/api/payments/methods/{bank['id']}").status_code == 200
    assert len(seller.get('/api/payments/methods').get_json()['payment_methods']) == 1


def test_dispute_blocks_auto_release(app, market):
    disputed_id = market.delivered_order()
    quiet_id = market.delivered_order()

    assert market.buyer.post(f'/api/payments/dispute/{disputed_id}', json={}).status_code == 400
    resp = market.buyer.post(f'/api/payments/dispute/{disputed_id}', json={
        'reason': 'Files do not open',
        'description': 'Every file in the archive is corrupted'
    })
    assert resp.status_code == 201
    assert resp.get_json()['order']['dispute']['status'] == 'open'
    assert market.seller.post(f'/api/payments/dispute/{disputed_id}', json={'reason': 'Other'}).status_code == 400

    long_ago = datetime.utcnow() - timedelta(hours=80)
    market.update_order(disputed_id, delivered_at=long_ago)
    market.update_order(quiet_id, delivered_at=long_ago)

    assert marketplace.run_auto_release() == 1

    assert market.order(disputed_id)['payment_status'] == 'paid'
    quiet = market.order(quiet_id)
    assert quiet['status'] == 'completed'
    assert quiet['payment_status'] == 'released'
    assert quiet['status_history'][-1]['note'] == 'Payment automatically released after 72 hours'


def test_auto_release_skips_recent_deliveries(app, market):
    order_id = market.delivered_order()
    assert marketplace.run_auto_release() == 0
    with app.app_context():
        assert db.session.get(Order, order_id).status == 'delivered'


def test_platform_stats_admin_only(market, make_user, login_as):
    order_id = market.delivered_order()
    market.buyer.put(f'/api/orders/{order_id}/accept', json={})
    market.paid_order()

    assert market.buyer.get('/api/payments/stats').status_code == 403

    admin = login_as(make_user('Ada Admin', is_admin=True))
    stats = admin.get('/api/payments/stats').get_json()
    assert stats['total_orders'] == 2
    assert stats['completed_orders'] == 1
    assert stats['total_revenue'] == 44
    assert stats['funds_in_escrow'] == 22
    assert stats['platform_fees'] == 2.05
    assert stats['completion_rate'] == 50.0
