import pytest

from realtime import socketio, coerce_room_id, user_room, order_room, conversation_room


def connect(app, user_client):
    sio = socketio.test_client(app, flask_test_client=user_client)
    assert sio.is_connected()
    sio.get_received()
    return sio


def event_names(sio):
    return [packet['name'] for packet in sio.get_received()]


def events_named(received, name):
    return [packet['args'][0] for packet in received if packet['name'] == name]


@pytest.mark.parametrize('value,expected', [
    (7, 7),
    ('7', 7),
    ({'id': 7}, 7),
    ({'orderId': 7}, None),
    (None, None),
    ('seven', None),
])
def test_coerce_room_id(value, expected):
    assert coerce_room_id(value) == expected


def test_room_names():
    assert user_room(3) == 'user_3'
    assert order_room(4) == 'order_4'
    assert conversation_room(5) == 'conversation_5'


def test_order_room_receives_delivery(app, market):
    order_id = market.paid_order()
    buyer_socket = connect(app, market.buyer)
    buyer_socket.emit('join_order', order_id)

    market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Ready for review'})

    received = buyer_socket.get_received()
    delivered = events_named(received, 'order_delivered')
    assert len(delivered) == 1
    assert delivered[0]['order_id'] == order_id
    assert delivered[0]['delivery_note'] == 'Ready for review'
    assert delivered[0]['is_revision'] is False
    assert events_named(received, 'order_status_update')[0]['type'] == 'order_delivered'
    assert 'new_notification' in [packet['name'] for packet in received]


def test_stranger_cannot_join_order_room(app, market, make_user, login_as):
    order_id = market.paid_order()
    stranger_socket = connect(app, login_as(make_user('Stan Stranger')))
    stranger_socket.emit('join_order', {'id': order_id})

    market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Done'})

    assert 'order_delivered' not in event_names(stranger_socket)


def test_leave_order_stops_updates(app, market):
    order_id = market.paid_order()
    buyer_socket = connect(app, market.buyer)
    buyer_socket.emit('join_order', order_id)
    buyer_socket.emit('leave_order', order_id)

    market.seller.put(f'/api/orders/{order_id}/deliver', json={'delivery_note': 'Done'})

    names = event_names(buyer_socket)
    assert 'order_delivered' not in names
    assert 'order_status_update' in names


def test_user_room_gets_notifications(app, market):
    seller_socket = connect(app, market.seller)
    order_id = market.create_order()

    received = seller_socket.get_received()
    notification = events_named(received, 'new_notification')[0]
    assert notification['notification_type'] == 'order_placed'
    assert notification['order_id'] == order_id
    assert events_named(received, 'order_status_update')[0]['type'] == 'order_placed'


def test_conversation_messages_fan_out(app, market):
    conversation_id = market.buyer.post(
        '/api/chat/conversations/direct', json={'participant_id': market.seller_id}
    ).get_json()['conversation']['id']
    buyer_socket = connect(app, market.buyer)
    buyer_socket.emit('join_conversation', conversation_id)

    market.seller.post(f'/api/chat/conversations/{conversation_id}/messages', json={'content': 'Sketches soon'})

    received = buyer_socket.get_received()
    assert events_named(received, 'new_message')[0]['content'] == 'Sketches soon'
    updated = events_named(received, 'conversation_updated')[0]
    assert updated['id'] == conversation_id
    assert updated['unread_count'] == 1
    assert events_named(received, 'message_notification')[0]['conversation_id'] == conversation_id


def test_typing_indicator_skips_sender(app, market):
    conversation_id = market.buyer.post(
        '/api/chat/conversations/direct', json={'participant_id': market.seller_id}
    ).get_json()['conversation']['id']
    buyer_socket = connect(app, market.buyer)
    seller_socket = connect(app, market.seller)
    buyer_socket.emit('join_conversation', conversation_id)
    seller_socket.emit('join_conversation', conversation_id)

    buyer_socket.emit('typing_start', {'conversation_id': conversation_id, 'user_name': 'Someone Else'})

    typing = events_named(seller_socket.get_received(), 'user_typing')
    assert typing == [{'user_id': market.buyer_id, 'user_name': 'Bea Buyer', 'conversation_id': conversation_id}]
    assert 'user_typing' not in event_names(buyer_socket)

    buyer_socket.emit('typing_stop', {'conversation_id': conversation_id})
    assert 'user_stopped_typing' in event_names(seller_socket)


def test_outsider_cannot_join_conversation(app, market, make_user, login_as):
    conversation_id = market.buyer.post(
        '/api/chat/conversations/direct', json={'participant_id': market.seller_id}
    ).get_json()['conversation']['id']
    stranger_socket = connect(app, login_as(make_user('Stan Stranger')))
    stranger_socket.emit('join_conversation', conversation_id)

    market.seller.post(f'/api/chat/conversations/{conversation_id}/messages', json={'content': 'Private'})

    assert 'new_message' not in event_names(stranger_socket)


def test_typing_from_non_members_is_dropped(app, client, market, make_user, login_as):
    conversation_id = market.buyer.post(
        '/api/chat/conversations/direct', json={'participant_id': market.seller_id}
    ).get_json()['conversation']['id']
    seller_socket = connect(app, market.seller)
    seller_socket.emit('join_conversation', conversation_id)
    anonymous_socket = connect(app, client)
    stranger_socket = connect(app, login_as(make_user('Stan Stranger')))

    for sio in (anonymous_socket, stranger_socket):
        sio.emit('typing_start', {'conversation_id': conversation_id, 'user_id': market.buyer_id})
        sio.emit('typing_stop', {'conversation_id': conversation_id, 'user_id': market.buyer_id})

    names = event_names(seller_socket)
    assert 'user_typing' not in names
    assert 'user_stopped_typing' not in names
