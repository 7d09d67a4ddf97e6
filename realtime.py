"""
Real-time fan-out over Socket.IO

Clients join per-user, per-order and per-conversation rooms; HTTP handlers
push state changes into those rooms through the emit helpers below. The
socket event handlers that need the models live in app.py.
"""

import logging

from flask_socketio import SocketIO

logger = logging.getLogger(__name__)

socketio = SocketIO()


def user_room(user_id):
    return f'user_{user_id}'


def order_room(order_id):
    return f'order_{order_id}'


def conversation_room(conversation_id):
    return f'conversation_{conversation_id}'


def emit_to_room(room, event, payload):
    """Emit an event to a room. Failures are logged, never raised to the request."""
    try:
        socketio.emit(event, payload, to=room)
    except Exception as e:
        logger.warning(f"Socket emit '{event}' to {room} failed: {str(e)}")


def emit_to_user(user_id, event, payload):
    emit_to_room(user_room(user_id), event, payload)


def emit_to_order(order_id, event, payload):
    emit_to_room(order_room(order_id), event, payload)


def emit_to_conversation(conversation_id, event, payload):
    emit_to_room(conversation_room(conversation_id), event, payload)


def coerce_room_id(value):
    """Accept either a bare id or {'id': ...} from socket clients"""
    if isinstance(value, dict):
        value = value.get('id')
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
