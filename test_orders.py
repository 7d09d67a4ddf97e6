import io

import pytest

from app import db, Conversation, Message, calculate_order_pricing, seller_net_amount


@pytest.mark.parametrize('gig_price,expected', [
    (1750, {'amount': 21, 'service_fee': 1, 'total_amount': 22}),
    (2500, {'amount': 30, 'service_fee': 2, 'total_amount': 32}),
    (4167, {'amount': 50, 'service_fee': 3, 'total_amount': 53}),
])
def test_order_pricing_rounds_half_up(gig_price, expected):
    assert calculate_order_pricing(gig_price) == expected


def test_seller_net_amount():
    assert seller_net_amount(21) == 19.95
    assert seller_net_amount(None) == 0


def test_create_order_snapshots_gig(market):
    resp = market.buyer.post('/api/orders', json={'gig_id': market.gig_id, 'requirements': 'Blue and gold'})
    assert resp.status_code == 201
    order = resp.get_json()['order']
    assert order['status'] == 'pending'
    assert order['payment_status'] == 'pending'
    assert order['amount'] == 21
    assert order['service_fee'] == 1
    assert order['total_amount'] == 22
    assert order['gig_title'] == 'I will design a modern logo'
    assert order['seller_id'] == market.seller_id
    assert order['requirements'] == 'Blue and gold'
    assert order['max_revisions'] == 1
    assert [h['status'] for h in order['status_history']] == ['pending']


def test_create_order_rejections(market, client):
    assert market.seller.post('/api/orders', json={'gig_id': market.gig_id}).status_code == 400
    assert market.buyer.post('/api/orders', json={'gig_id': 9999}).status_code == 404
    assert market.buyer.post('/api/orders', json={}).status_code == 404
    resp = market.buyer.post('/api/orders', json={'gig_id': market.gig_id, 'package_type': 'platinum'})
    assert resp.status_code == 400
    assert client.post('/api/orders', json={'gig_id': market.gig_id}).status_code == 401


def test_simulated_payment_activates_order(market):
    order_id = market.create_order()

    assert market.seller.post(f'/api/orders/{order_id}/payment', json={}).status_code == 403

    resp = market.buyer.post(f'/api/orders/{order_id}/payment', json={'payment_method': 'card'})
    assert resp.status_code == 200
    order = resp.get_json()['order']
    assert order['status'] == 'active'
    assert order['payment_status'] == 'paid'
    assert order['status_label'] == 'In Progress'

    again = market.buyer.post(f'/api/orders/{order_id}/payment', json={})
    assert again.status_code == 400


def test_full_lifecycle_with_one_revision(market):
    order_id = market.paid_order()

    assert market.buyer.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'x'}).status_code == 403

    resp = market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Three concepts attached'})
    assert resp.status_code == 200
    assert resp.get_json()['order']['status'] == 'delivered'

    assert market.buyer.put(f'/api/orders/{order_id}/revision', json={}).status_code == 400

    resp = market.buyer.put(f'/api/orders/{order_id}/revision', json={'revision_note': 'Make the icon bolder'})
    assert resp.status_code == 200
    order = resp.get_json()['order']
    assert order['status'] == 'revision'
    assert order['revision_count'] == 1
    assert order['revision_note'] == 'Make the icon bolder'

    resp = market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Bolder icon'})
    assert resp.status_code == 200

    resp = market.buyer.put(f'/api/orders/{order_id}/revision', json={'revision_note': 'One more change'})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Maximum revisions exceeded'

    resp = market.buyer.put(f'/api/orders/{order_id}/accept', json={'rating': 5, 'review': 'Excellent'})
    assert resp.status_code == 200
    order = resp.get_json()['order']
    assert order['status'] == 'completed'
    assert order['payment_status'] == 'released'
    assert order['buyer_rating'] == 5
    assert order['is_reviewed'] is True

    notes = [h['note'] for h in market.order(order_id)['status_history']]
    assert notes == [
        'Order created and awaiting payment',
        'Payment received, order is now active',
        'Order delivered',
        'Revision requested (1/1)',
        'Revision delivered (1/1)',
        'Delivery accepted, payment released to seller',
    ]


def test_accept_requires_delivered_order_and_valid_rating(market):
    order_id = market.paid_order()
    assert market.buyer.put(f'/api/orders/{order_id}/accept', json={}).status_code == 400

    market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Done'})
    assert market.seller.put(f'/api/orders/{order_id}/accept', json={}).status_code == 403
    assert market.buyer.put(f'/api/orders/{order_id}/accept', json={'rating': 9}).status_code == 400
    assert market.order(order_id)['status'] == 'delivered'


def test_accept_waits_for_confirmed_payment(market):
    order_id = market.delivered_order()
    market.update_order(order_id, payment_status='processing', payment_intent_id='pi_test_1')

    resp = market.buyer.put(f'/api/orders/{order_id}/accept', json={})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Payment has not been confirmed yet'
    order = market.order(order_id)
    assert order['status'] == 'delivered'
    assert order['payment_status'] == 'processing'


def completion_message(market):
    notifications = market.seller.get('/api/notifications').get_json()['notifications']
    return [n['message'] for n in notifications if n['notification_type'] == 'order_completed'][0]


def test_completion_notice_mentions_release_only_when_paid_out(market):
    order_id = market.delivered_order()
    market.buyer.put(f'/api/orders/{order_id}/accept', json={})
    assert completion_message(market) == '"I will design a modern logo" was accepted and $19.95 has been released to you'


def test_completion_notice_without_payment(market):
    order_id = market.delivered_order()
    market.update_order(order_id, payment_status='pending')
    market.buyer.put(f'/api/orders/{order_id}/accept', json={})
    assert market.order(order_id)['status'] == 'completed'
    assert completion_message(market) == '"I will design a modern logo" was accepted'


def test_deliver_requires_active_order(market):
    order_id = market.create_order()
    resp = market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Early'})
    assert resp.status_code == 400


def test_order_access_limited_to_parties(market, make_user, login_as):
    order_id = market.create_order()
    stranger = login_as(make_user('Stan Stranger'))

    assert market.buyer.get(f'/api/orders/{order_id}').status_code == 200
    assert market.seller.get(f'/api/orders/{order_id}').status_code == 200
    assert stranger.get(f'/api/orders/{order_id}').status_code == 403
    assert stranger.put(f'/api/orders/{order_id}/cancel', json={}).status_code == 403
    assert market.buyer.get('/api/orders/9999').status_code == 404


def test_cancel_unpaid_order_marks_payment_refunded(market, fake_stripe):
    order_id = market.create_order()
    resp = market.buyer.put(f'/api/orders/{order_id}/cancel', json={'reason': 'Changed my mind'})
    assert resp.status_code == 200
    order = resp.get_json()['order']
    assert order['status'] == 'cancelled'
    assert order['payment_status'] == 'refunded'
    assert fake_stripe.call_names() == []
    assert order['status_history'][-1]['note'] == 'Order cancelled by buyer: Changed my mind'

    assert market.buyer.put(f'/api/orders/{order_id}/cancel', json={}).status_code == 400


def test_cancel_paid_order_refunds(market):
    order_id = market.paid_order()
    resp = market.seller.put(f'/api/orders/{order_id}/cancel', json={})
    assert resp.status_code == 200
    assert resp.get_json()['order']['payment_status'] == 'refunded'


def test_completed_order_cannot_be_cancelled(market):
    order_id = market.delivered_order()
    market.buyer.put(f'/api/orders/{order_id}/accept', json={})
    resp = market.buyer.put(f'/api/orders/{order_id}/cancel', json={})
    assert resp.status_code == 400


def test_order_messages_mirror_into_conversation(app, market):
    order_id = market.paid_order()

    assert market.buyer.post(f'/api/orders/{order_id}/messages', json={'message': ''}).status_code == 400
    resp = market.buyer.post(f'/api/orders/{order_id}/messages', json={'message': 'Can you use serif type?'})
    assert resp.status_code == 201
    assert resp.get_json()['order_message']['message'] == 'Can you use serif type?'

    conversations = market.seller.get('/api/chat/conversations').get_json()['conversations']
    order_conversation = [c for c in conversations if c['order_id'] == order_id]
    assert len(order_conversation) == 1
    assert order_conversation[0]['type'] == 'order'
    assert order_conversation[0]['last_message']['content'] == 'Can you use serif type?'
    assert order_conversation[0]['unread_count'] == 1

    with app.app_context():
        conversation = Conversation.query.filter_by(order_id=order_id).one()
        contents = [m.content for m in Message.query.filter_by(conversation_id=conversation.id).all()]
        assert 'Can you use serif type?' in contents


def test_order_lists_paginate(market):
    market.create_order()
    market.create_order()

    page = market.buyer.get('/api/orders/buyer?limit=1').get_json()
    assert page['total'] == 2
    assert page['total_pages'] == 2
    assert page['current_page'] == 1
    assert len(page['orders']) == 1

    seller_page = market.seller.get('/api/orders/seller?status=pending').get_json()
    assert seller_page['total'] == 2
    assert market.seller.get('/api/orders/seller?status=active').get_json()['total'] == 0


def test_order_stats(market):
    completed_id = market.delivered_order()
    market.buyer.put(f'/api/orders/{completed_id}/accept', json={'rating': 4})
    market.create_order()

    buyer = market.buyer.get('/api/orders/buyer/stats').get_json()
    assert buyer['total_orders'] == 2
    assert buyer['completed_orders'] == 1
    assert buyer['pending_orders'] == 1
    assert buyer['total_spent'] == 22

    seller = market.seller.get('/api/orders/seller/stats').get_json()
    assert seller['total_orders'] == 2
    assert seller['total_earnings'] == 19.95
    assert seller['average_rating'] == 4
    assert seller['total_gigs'] == 1


def test_multipart_delivery_files(market):
    order_id = market.paid_order()

    bad = market.seller.post(
        f'/api/delivery/orders/{order_id}/deliver',
        data={'files': [(io.BytesIO(b'MZ'), 'setup.exe')]},
        content_type='multipart/form-data'
    )
    assert bad.status_code == 400

    resp = market.seller.post(
        f'/api/delivery/orders/{order_id}/deliver',
        data={
            'delivery_note': 'Final files',
            'files': [(io.BytesIO(b'%PDF-1.4'), 'brand-guide.pdf'), (io.BytesIO(b'PK'), 'sources.zip')]
        },
        content_type='multipart/form-data'
    )
    assert resp.status_code == 200
    assert resp.get_json()['order']['status'] == 'delivered'

    listing = market.buyer.get(f'/api/delivery/orders/{order_id}/files').get_json()
    assert listing['delivery_note'] == 'Final files'
    assert sorted(f['file_name'] for f in listing['files']) == ['brand-guide.pdf', 'sources.zip']
    assert all(f['file_url'].startswith('/uploads/deliveries/') for f in listing['files'])

    accepted = market.buyer.post(f'/api/delivery/orders/{order_id}/accept', json={})
    assert accepted.status_code == 200
    assert accepted.get_json()['order']['status'] == 'completed'


def test_delivery_revision_alias(market):
    order_id = market.delivered_order()
    resp = market.buyer.post(f'/api/delivery/orders/{order_id}/revision', json={'note': 'Swap the colours'})
    assert resp.status_code == 200
    assert resp.get_json()['order']['status'] == 'revision'


def test_status_override_route_for_development(market):
    order_id = market.create_order()
    resp = market.buyer.post(f'/api/test/orders/{order_id}/status', json={'status': 'delivered'})
    assert resp.status_code == 200
    order = resp.get_json()['order']
    assert order['status'] == 'delivered'
    assert order['payment_status'] == 'paid'
    assert order['delivered_at'] is not None

    assert market.buyer.post(f'/api/test/orders/{order_id}/status', json={'status': 'lost'}).status_code == 400
    assert market.buyer.get('/api/test/orders').get_json()['total'] == 1
