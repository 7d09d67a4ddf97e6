from flask import Flask, request, jsonify, session, send_from_directory
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import join_room, leave_room, emit
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from functools import wraps
from email_validator import validate_email, EmailNotValidError
from dotenv import load_dotenv
from sqlalchemy import or_, func
import os
import secrets
import json
import re
import uuid

load_dotenv()

from realtime import (
    socketio, emit_to_user, emit_to_order, emit_to_conversation,
    user_room, order_room, conversation_room, coerce_room_id
)
from security_logger import init_security_logger

INR_TO_USD = float(os.environ.get('INR_TO_USD', 0.012))
SERVICE_FEE_PERCENT = 0.05
PLATFORM_FEE_PERCENT = 0.05
IS_PRODUCTION = os.environ.get('FLASK_ENV') == 'production'

app = Flask(__name__)

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # Generate a random secret key for development if none is set
    app.secret_key = secrets.token_hex(32)
    print("WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///marketplace.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = IS_PRODUCTION
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)

db = SQLAlchemy(app)

# Secure CORS configuration - restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

# Socket.IO shares the session cookie and origin list with the REST API
socketio.init_app(
    app,
    cors_allowed_origins='*' if allowed_origins == ['*'] else allowed_origins,
    path='ws'
)

security_logger = init_security_logger(app)

# File upload configuration
UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER') or os.path.join(os.path.dirname(os.path.abspath(__file__)), 'uploads')
IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
FILE_EXTENSIONS = IMAGE_EXTENSIONS | {'pdf', 'doc', 'docx', 'txt', 'zip', 'psd', 'ai', 'svg', 'mp4', 'mov', 'mp3', 'csv', 'xlsx', 'pptx'}
MAX_FILE_SIZE = 25 * 1024 * 1024  # 25MB per request

os.makedirs(os.path.join(UPLOAD_FOLDER, 'gigs'), exist_ok=True)
os.makedirs(os.path.join(UPLOAD_FOLDER, 'deliveries'), exist_ok=True)
os.makedirs(os.path.join(UPLOAD_FOLDER, 'chat'), exist_ok=True)

app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
app.config['MAX_CONTENT_LENGTH'] = MAX_FILE_SIZE


def allowed_file(filename, extensions=IMAGE_EXTENSIONS):
    """Check if file extension is allowed"""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in extensions


def save_upload(file, subfolder):
    """Store an uploaded file under the uploads folder and describe it"""
    original_name = secure_filename(file.filename) or 'upload'
    stored_name = f"{uuid.uuid4().hex}_{original_name}"
    path = os.path.join(UPLOAD_FOLDER, subfolder, stored_name)
    file.save(path)
    return {
        'file_name': file.filename,
        'file_url': f'/uploads/{subfolder}/{stored_name}',
        'file_type': file.mimetype or 'application/octet-stream',
        'file_size': os.path.getsize(path),
        'public_id': f'{subfolder}/{stored_name}'
    }


# Rate limiting storage (in-memory, consider Redis for production)
login_attempts = {}
api_rate_limits = {}


# General API rate limiting
def api_rate_limit(requests_per_minute=60):
    """Rate limit decorator for general API endpoints"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            identifier = f"{request.remote_addr}:{f.__name__}"
            current_time = datetime.utcnow()

            if identifier not in api_rate_limits:
                api_rate_limits[identifier] = {'requests': [], 'blocked_until': None}

            rate_data = api_rate_limits[identifier]

            # Check if blocked
            if rate_data['blocked_until'] and current_time < rate_data['blocked_until']:
                remaining = int((rate_data['blocked_until'] - current_time).total_seconds())
                return jsonify({'error': f'Rate limit exceeded. Try again in {remaining} seconds'}), 429

            # Remove old requests (older than 1 minute)
            one_minute_ago = current_time - timedelta(minutes=1)
            rate_data['requests'] = [t for t in rate_data['requests'] if t > one_minute_ago]

            if len(rate_data['requests']) >= requests_per_minute:
                rate_data['blocked_until'] = current_time + timedelta(seconds=60)
                return jsonify({'error': 'Rate limit exceeded. Please wait a moment.'}), 429

            rate_data['requests'].append(current_time)

            return f(*args, **kwargs)
        return wrapped
    return decorator


# Cleanup old rate limit entries periodically
_last_cleanup = datetime.utcnow()


def cleanup_rate_limits():
    """Remove stale rate limit entries older than 1 hour"""
    global _last_cleanup
    current_time = datetime.utcnow()
    cutoff = current_time - timedelta(hours=1)

    stale_logins = [k for k, v in login_attempts.items()
                    if v['first_attempt'] < cutoff and
                    (v['locked_until'] is None or v['locked_until'] < current_time)]
    for k in stale_logins:
        del login_attempts[k]

    stale_api = [k for k, v in api_rate_limits.items()
                 if not v['requests'] or max(v['requests']) < cutoff]
    for k in stale_api:
        del api_rate_limits[k]

    _last_cleanup = current_time


@app.before_request
def before_request_handler():
    """Run periodic cleanup on rate limit storage"""
    current_time = datetime.utcnow()
    # Run cleanup every 5 minutes
    if (current_time - _last_cleanup).total_seconds() > 300:
        cleanup_rate_limits()


# Security headers middleware
@app.after_request
def set_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    response.headers['Content-Security-Policy'] = "default-src 'none'; img-src 'self' data: https:; frame-ancestors 'none'"
    return response


# Input validation functions
def validate_password_strength(password):
    """Validate password meets security requirements"""
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"
    if not re.search(r'[A-Z]', password):
        return False, "Password must contain at least one uppercase letter"
    if not re.search(r'[a-z]', password):
        return False, "Password must contain at least one lowercase letter"
    if not re.search(r'\d', password):
        return False, "Password must contain at least one number"
    return True, "Password is valid"


def sanitize_input(text, max_length=1000):
    """Sanitize text input to prevent injection attacks"""
    if not text:
        return text
    text = str(text).strip()
    if len(text) > max_length:
        text = text[:max_length]
    return text


def parse_positive_int(value, default, maximum=None):
    try:
        value = int(value)
    except (TypeError, ValueError):
        return default
    if value < 1:
        return default
    if maximum:
        value = min(value, maximum)
    return value


# Rate limiting decorator
def rate_limit(max_attempts=5, window_minutes=15, lockout_minutes=30):
    """Rate limit decorator to prevent brute force attacks"""
    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            identifier = request.remote_addr
            current_time = datetime.utcnow()

            if identifier not in login_attempts:
                login_attempts[identifier] = {'count': 0, 'first_attempt': current_time, 'locked_until': None}

            attempt_data = login_attempts[identifier]

            # Check if account is locked
            if attempt_data['locked_until'] and current_time < attempt_data['locked_until']:
                remaining = int((attempt_data['locked_until'] - current_time).total_seconds() / 60)
                return jsonify({'error': f'Too many failed attempts. Account locked for {remaining} more minutes'}), 429

            # Reset if window has passed
            if (current_time - attempt_data['first_attempt']).total_seconds() > window_minutes * 60:
                attempt_data['count'] = 0
                attempt_data['first_attempt'] = current_time
                attempt_data['locked_until'] = None

            if attempt_data['count'] >= max_attempts:
                attempt_data['locked_until'] = current_time + timedelta(minutes=lockout_minutes)
                return jsonify({'error': f'Too many failed attempts. Account locked for {lockout_minutes} minutes'}), 429

            attempt_data['count'] += 1

            return f(*args, **kwargs)
        return wrapped
    return decorator


def reset_rate_limit(identifier):
    """Reset rate limit for successful login"""
    if identifier in login_attempts:
        login_attempts[identifier] = {'count': 0, 'first_attempt': datetime.utcnow(), 'locked_until': None}


# Money helpers
def round_half_up(value):
    """Round to whole currency units, halves away from zero"""
    return int(Decimal(str(value)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def calculate_order_pricing(gig_price):
    """
    Price an order from a gig's INR list price

    Returns:
        dict: amount, service_fee and total_amount in whole USD
    """
    amount = round_half_up(gig_price * INR_TO_USD)
    service_fee = round_half_up(amount * SERVICE_FEE_PERCENT)
    return {
        'amount': amount,
        'service_fee': service_fee,
        'total_amount': amount + service_fee
    }


def seller_net_amount(amount):
    """Seller's share of an order after the platform fee"""
    return round((amount or 0) * (1 - PLATFORM_FEE_PERCENT), 2)


def load_json(value, default):
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def isoformat(value):
    return value.isoformat() if value else None


# Login required decorator for API routes
def login_required(f):
    """Decorator to require user authentication for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        return f(*args, **kwargs)
    return decorated_function


# Admin authentication decorator
def admin_required(f):
    """Decorator to require admin authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401

        user = db.session.get(User, session['user_id'])
        if not user or not user.is_admin:
            return jsonify({'error': 'Forbidden - Admin access required'}), 403

        return f(*args, **kwargs)
    return decorated_function


def current_user():
    user_id = session.get('user_id')
    return db.session.get(User, user_id) if user_id else None


class PaymentProcessorError(Exception):
    """Raised when the payment processor rejects an escrow operation"""


# Database Models
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255))  # empty for Google-only accounts
    is_oauth = db.Column(db.Boolean, default=False)
    google_id = db.Column(db.String(255), unique=True)
    role = db.Column(db.String(20), default='client')  # client, freelancer
    avatar = db.Column(db.String(500))
    profile_picture = db.Column(db.String(500))
    bio = db.Column(db.Text)
    location = db.Column(db.String(100))
    avg_response_time = db.Column(db.String(50), default='1 hour')
    member_since = db.Column(db.DateTime, default=datetime.utcnow)
    stripe_account_id = db.Column(db.String(255))
    stripe_customer_id = db.Column(db.String(255))
    payment_setup_complete = db.Column(db.Boolean, default=False)
    is_admin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'avatar': self.avatar,
            'profile_picture': self.profile_picture,
            'bio': self.bio,
            'location': self.location,
            'avg_response_time': self.avg_response_time,
            'member_since': isoformat(self.member_since),
            'is_oauth': self.is_oauth,
            'payment_setup_complete': self.payment_setup_complete,
            'is_admin': self.is_admin,
            'created_at': isoformat(self.created_at)
        }

    def summary(self):
        """Public subset embedded in gigs, orders and conversations"""
        return {
            'id': self.id,
            'name': self.name,
            'avatar': self.avatar,
            'profile_picture': self.profile_picture,
            'role': self.role
        }


class Gig(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50))
    price = db.Column(db.Float, nullable=False)  # INR
    delivery_time = db.Column(db.Integer, nullable=False)  # days
    image = db.Column(db.String(500))
    images = db.Column(db.Text)  # JSON list of URLs
    seller_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    package_basic_title = db.Column(db.String(200))
    package_basic_description = db.Column(db.Text)
    package_basic_price = db.Column(db.Float)
    package_basic_delivery_time = db.Column(db.Integer)
    average_rating = db.Column(db.Float, default=0.0)
    total_reviews = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'category': self.category,
            'price': self.price,
            'delivery_time': self.delivery_time,
            'image': self.image,
            'images': load_json(self.images, []),
            'seller_id': self.seller_id,
            'packages': {
                'basic': {
                    'title': self.package_basic_title,
                    'description': self.package_basic_description,
                    'price': self.package_basic_price,
                    'delivery_time': self.package_basic_delivery_time
                }
            },
            'average_rating': self.average_rating,
            'total_reviews': self.total_reviews,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }


class Review(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    user_name = db.Column(db.String(120))
    rating = db.Column(db.Integer, nullable=False)  # 1-5
    comment = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('gig_id', 'user_id', name='unique_gig_review'),)

    def to_dict(self):
        return {
            'id': self.id,
            'gig_id': self.gig_id,
            'user_id': self.user_id,
            'user_name': self.user_name,
            'rating': self.rating,
            'comment': self.comment,
            'created_at': isoformat(self.created_at)
        }


class SavedGig(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('user_id', 'gig_id', name='unique_saved_gig'),)


class Order(db.Model):
    """An order placed on a gig, carrying its escrow payment state"""
    id = db.Column(db.Integer, primary_key=True)
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'))  # cleared if the gig is deleted
    buyer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    seller_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    gig_title = db.Column(db.String(200), nullable=False)
    gig_image = db.Column(db.String(500))
    package_type = db.Column(db.String(20), default='basic')  # basic, standard, premium
    amount = db.Column(db.Float, nullable=False)
    service_fee = db.Column(db.Float, default=0.0)
    total_amount = db.Column(db.Float, nullable=False)
    delivery_time = db.Column(db.Integer, nullable=False)
    delivery_date = db.Column(db.DateTime)
    status = db.Column(db.String(20), default='pending')  # pending, active, delivered, revision, completed, cancelled
    requirements = db.Column(db.Text)
    delivery_note = db.Column(db.Text)
    revision_count = db.Column(db.Integer, default=0)
    max_revisions = db.Column(db.Integer, default=1)
    revision_note = db.Column(db.Text)
    revision_requested_at = db.Column(db.DateTime)
    payment_status = db.Column(db.String(20), default='pending')  # pending, processing, paid, released, refunded
    payment_method = db.Column(db.String(50))
    payment_intent_id = db.Column(db.String(255), index=True)
    stripe_charge_id = db.Column(db.String(255))
    is_reviewed = db.Column(db.Boolean, default=False)
    buyer_rating = db.Column(db.Integer)
    buyer_review = db.Column(db.Text)
    dispute_status = db.Column(db.String(20))  # open, resolved
    dispute_reason = db.Column(db.String(200))
    dispute_description = db.Column(db.Text)
    disputed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    disputed_at = db.Column(db.DateTime)
    delivered_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self, detail=False):
        """Convert order to dictionary for JSON response"""
        data = {
            'id': self.id,
            'gig_id': self.gig_id,
            'buyer_id': self.buyer_id,
            'seller_id': self.seller_id,
            'gig_title': self.gig_title,
            'gig_image': self.gig_image,
            'package_type': self.package_type,
            'amount': self.amount,
            'service_fee': self.service_fee,
            'total_amount': self.total_amount,
            'delivery_time': self.delivery_time,
            'delivery_date': isoformat(self.delivery_date),
            'status': self.status,
            'status_label': self.get_status_label(),
            'requirements': self.requirements,
            'delivery_note': self.delivery_note,
            'revision_count': self.revision_count,
            'max_revisions': self.max_revisions,
            'revision_note': self.revision_note,
            'revision_requested_at': isoformat(self.revision_requested_at),
            'payment_status': self.payment_status,
            'payment_method': self.payment_method,
            'is_reviewed': self.is_reviewed,
            'buyer_rating': self.buyer_rating,
            'buyer_review': self.buyer_review,
            'dispute': {
                'status': self.dispute_status,
                'reason': self.dispute_reason,
                'description': self.dispute_description,
                'disputed_by': self.disputed_by,
                'disputed_at': isoformat(self.disputed_at)
            } if self.dispute_status else None,
            'delivered_at': isoformat(self.delivered_at),
            'completed_at': isoformat(self.completed_at),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }
        if detail:
            buyer = db.session.get(User, self.buyer_id)
            seller = db.session.get(User, self.seller_id)
            data['buyer'] = buyer.summary() if buyer else None
            data['seller'] = seller.summary() if seller else None
            data['status_history'] = [h.to_dict() for h in OrderStatusHistory.query.filter_by(
                order_id=self.id).order_by(OrderStatusHistory.timestamp.asc(), OrderStatusHistory.id.asc()).all()]
            data['messages'] = [m.to_dict() for m in OrderMessage.query.filter_by(
                order_id=self.id).order_by(OrderMessage.timestamp.asc(), OrderMessage.id.asc()).all()]
            data['delivery_files'] = [f.to_dict() for f in DeliveryFile.query.filter_by(order_id=self.id).all()]
        return data

    def get_status_label(self):
        """Get human-readable status label"""
        labels = {
            'pending': 'Awaiting Payment',
            'active': 'In Progress',
            'delivered': 'Delivered',
            'revision': 'Revision Requested',
            'completed': 'Completed',
            'cancelled': 'Cancelled'
        }
        return labels.get(self.status, (self.status or '').title())

    def party_role(self, user_id):
        if user_id == self.buyer_id:
            return 'buyer'
        if user_id == self.seller_id:
            return 'seller'
        return None


class OrderStatusHistory(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)
    note = db.Column(db.Text)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {'status': self.status, 'note': self.note, 'timestamp': isoformat(self.timestamp)}


class OrderMessage(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'), nullable=False)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_system = db.Column(db.Boolean, default=False)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'sender_id': self.sender_id,
            'message': self.message,
            'is_system': self.is_system,
            'timestamp': isoformat(self.timestamp)
        }


class DeliveryFile(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'), nullable=False)
    file_name = db.Column(db.String(255), nullable=False)
    file_url = db.Column(db.String(500), nullable=False)
    file_type = db.Column(db.String(100))
    file_size = db.Column(db.Integer)
    public_id = db.Column(db.String(255))
    uploaded_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'file_name': self.file_name,
            'file_url': self.file_url,
            'file_type': self.file_type,
            'file_size': self.file_size,
            'public_id': self.public_id,
            'uploaded_at': isoformat(self.uploaded_at)
        }


class PaymentMethod(db.Model):
    """Payout destination for a seller"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    type = db.Column(db.String(20), nullable=False)  # bank, paypal
    account_name = db.Column(db.String(120))
    account_number = db.Column(db.String(50))
    routing_number = db.Column(db.String(50))
    bank_name = db.Column(db.String(120))
    email = db.Column(db.String(120))
    is_primary = db.Column(db.Boolean, default=False)
    is_verified = db.Column(db.Boolean, default=False)
    status = db.Column(db.String(30), default='active')  # active, inactive, pending_verification
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'account_name': self.account_name,
            'account_number': f"****{self.account_number[-4:]}" if self.account_number else None,
            'routing_number': self.routing_number,
            'bank_name': self.bank_name,
            'email': self.email,
            'is_primary': self.is_primary,
            'is_verified': self.is_verified,
            'status': self.status,
            'created_at': isoformat(self.created_at)
        }


class Withdrawal(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    method = db.Column(db.String(50), default='bank_transfer')
    status = db.Column(db.String(20), default='completed')
    requested_at = db.Column(db.DateTime, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'amount': self.amount,
            'method': self.method,
            'status': self.status,
            'requested_at': isoformat(self.requested_at),
            'processed_at': isoformat(self.processed_at)
        }


class Conversation(db.Model):
    """Model for chat conversations between users"""
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'))
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'))
    type = db.Column(db.String(20), default='general')  # order, inquiry, general, direct
    title = db.Column(db.String(200))
    is_group = db.Column(db.Boolean, default=False)
    status = db.Column(db.String(20), default='active')  # active, archived, blocked
    last_message_content = db.Column(db.Text)
    last_message_sender_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    last_message_type = db.Column(db.String(20))
    last_message_at = db.Column(db.DateTime, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def participant_ids(self):
        return [p.user_id for p in ConversationParticipant.query.filter_by(conversation_id=self.id).all()]

    def to_dict(self, for_user_id=None):
        data = {
            'id': self.id,
            'order_id': self.order_id,
            'gig_id': self.gig_id,
            'type': self.type,
            'title': self.title,
            'is_group': self.is_group,
            'status': self.status,
            'participants': self.participant_ids(),
            'last_message': {
                'content': self.last_message_content,
                'sender_id': self.last_message_sender_id,
                'message_type': self.last_message_type,
                'timestamp': isoformat(self.last_message_at)
            } if self.last_message_content else None,
            'last_message_at': isoformat(self.last_message_at),
            'created_at': isoformat(self.created_at)
        }
        if for_user_id is not None:
            other_id = next((uid for uid in data['participants'] if uid != for_user_id), None)
            other = db.session.get(User, other_id) if other_id else None
            membership = ConversationParticipant.query.filter_by(
                conversation_id=self.id, user_id=for_user_id).first()
            data['other_participant'] = other.summary() if other else None
            data['unread_count'] = membership.unread_count if membership else 0
        return data


class ConversationParticipant(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversation.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    unread_count = db.Column(db.Integer, default=0)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('conversation_id', 'user_id', name='unique_participant'),)


class Message(db.Model):
    """Model for individual chat messages"""
    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversation.id'), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    message_type = db.Column(db.String(20), default='text')  # text, file, image, system, order_update
    attachments = db.Column(db.Text)  # JSON list
    status = db.Column(db.String(20), default='sent')  # sent, delivered, read
    read_by = db.Column(db.Text)  # JSON list of {user_id, read_at}
    reply_to_id = db.Column(db.Integer, db.ForeignKey('message.id'))
    system_data = db.Column(db.Text)  # JSON
    reactions = db.Column(db.Text)  # JSON list of {user_id, emoji}
    is_deleted = db.Column(db.Boolean, default=False)
    deleted_at = db.Column(db.DateTime)
    edit_history = db.Column(db.Text)  # JSON list of {content, edited_at}
    is_edited = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        sender = db.session.get(User, self.sender_id)
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'sender_id': self.sender_id,
            'sender': sender.summary() if sender else None,
            'content': self.content,
            'message_type': self.message_type,
            'attachments': load_json(self.attachments, []),
            'status': self.status,
            'read_by': load_json(self.read_by, []),
            'reply_to_id': self.reply_to_id,
            'system_data': load_json(self.system_data, None),
            'reactions': load_json(self.reactions, []),
            'is_deleted': self.is_deleted,
            'is_edited': self.is_edited,
            'edit_history': load_json(self.edit_history, []),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }


class Notification(db.Model):
    """Model for user notifications"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    notification_type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id'))
    gig_id = db.Column(db.Integer, db.ForeignKey('gig.id'))
    from_user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime)
    action_url = db.Column(db.String(500))
    extra_data = db.Column(db.Text)  # JSON
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'order_id': self.order_id,
            'gig_id': self.gig_id,
            'from_user_id': self.from_user_id,
            'is_read': self.is_read,
            'read_at': isoformat(self.read_at),
            'action_url': self.action_url,
            'metadata': load_json(self.extra_data, {}),
            'created_at': isoformat(self.created_at)
        }


NOTIFICATION_TYPES = {
    'order_placed', 'order_delivered', 'order_completed', 'order_cancelled',
    'payment_received', 'message_received', 'review_received', 'gig_approved', 'system'
}


# Notification helpers
def create_notification(user_id, title, message, notification_type='system', order_id=None,
                        gig_id=None, from_user_id=None, action_url=None, metadata=None):
    """Persist a notification and push it to the recipient's socket room"""
    if notification_type not in NOTIFICATION_TYPES:
        notification_type = 'system'
    try:
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            notification_type=notification_type,
            order_id=order_id,
            gig_id=gig_id,
            from_user_id=from_user_id,
            action_url=action_url,
            extra_data=json.dumps(metadata) if metadata else None
        )
        db.session.add(notification)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create notification error: {str(e)}")
        return None

    emit_to_user(user_id, 'new_notification', notification.to_dict())
    return notification


def notify_order_placed(order):
    buyer = db.session.get(User, order.buyer_id)
    return create_notification(
        order.seller_id,
        'New Order Received',
        f"{buyer.name if buyer else 'A buyer'} placed an order for \"{order.gig_title}\"",
        'order_placed',
        order_id=order.id,
        gig_id=order.gig_id,
        from_user_id=order.buyer_id,
        action_url=f'/orders/{order.id}',
        metadata={'amount': order.amount}
    )


def notify_order_delivered(order):
    return create_notification(
        order.buyer_id,
        'Order Delivered',
        f"Your order \"{order.gig_title}\" has been delivered. Please review the delivery.",
        'order_delivered',
        order_id=order.id,
        gig_id=order.gig_id,
        from_user_id=order.seller_id,
        action_url=f'/orders/{order.id}'
    )


def notify_order_completed(order):
    message = f"\"{order.gig_title}\" was accepted"
    if order.payment_status == 'released':
        message += f" and ${seller_net_amount(order.amount):.2f} has been released to you"
    return create_notification(
        order.seller_id,
        'Order Completed',
        message,
        'order_completed',
        order_id=order.id,
        gig_id=order.gig_id,
        from_user_id=order.buyer_id,
        action_url=f'/orders/{order.id}',
        metadata={'rating': order.buyer_rating}
    )


def notify_order_cancelled(order, cancelled_by_id):
    recipient_id = order.seller_id if cancelled_by_id == order.buyer_id else order.buyer_id
    return create_notification(
        recipient_id,
        'Order Cancelled',
        f"The order \"{order.gig_title}\" has been cancelled",
        'order_cancelled',
        order_id=order.id,
        gig_id=order.gig_id,
        from_user_id=cancelled_by_id,
        action_url=f'/orders/{order.id}'
    )


def notify_payment_received(order):
    return create_notification(
        order.seller_id,
        'Payment Received',
        f"Payment of ${order.total_amount:.2f} for \"{order.gig_title}\" is held in escrow. You can start working.",
        'payment_received',
        order_id=order.id,
        gig_id=order.gig_id,
        from_user_id=order.buyer_id,
        action_url=f'/orders/{order.id}',
        metadata={'amount': order.total_amount}
    )


def notify_message_received(recipient_id, sender, conversation_id, preview):
    return create_notification(
        recipient_id,
        f"New message from {sender.name}",
        preview[:100],
        'message_received',
        from_user_id=sender.id,
        action_url=f'/messages/{conversation_id}',
        metadata={'conversation_id': conversation_id}
    )


def notify_review_received(gig, reviewer, rating):
    return create_notification(
        gig.seller_id,
        'New Review',
        f"{reviewer.name} left a {rating}-star review on \"{gig.title}\"",
        'review_received',
        gig_id=gig.id,
        from_user_id=reviewer.id,
        action_url=f'/gigs/{gig.id}',
        metadata={'rating': rating}
    )


# Chat helpers
def get_participant(conversation_id, user_id):
    return ConversationParticipant.query.filter_by(conversation_id=conversation_id, user_id=user_id).first()


def create_conversation(participant_ids, conversation_type='general', order_id=None, gig_id=None, title=None):
    conversation = Conversation(
        type=conversation_type,
        order_id=order_id,
        gig_id=gig_id,
        title=title,
        is_group=len(participant_ids) > 2
    )
    db.session.add(conversation)
    db.session.flush()
    for user_id in participant_ids:
        db.session.add(ConversationParticipant(conversation_id=conversation.id, user_id=user_id))
    db.session.flush()
    return conversation


def get_or_create_order_conversation(order):
    """The single conversation attached to an order, created on first use"""
    conversation = Conversation.query.filter_by(order_id=order.id).first()
    if conversation:
        return conversation
    return create_conversation(
        [order.buyer_id, order.seller_id],
        conversation_type='order',
        order_id=order.id,
        gig_id=order.gig_id,
        title=f"Order: {order.gig_title}"
    )


def conversation_ids_for(user_id):
    return db.select(ConversationParticipant.conversation_id).where(ConversationParticipant.user_id == user_id)


def find_pair_conversation(user_id, other_id, order_id=None, gig_id=None):
    """Existing conversation between two users scoped to the same order / gig / neither"""
    mine = conversation_ids_for(user_id)
    theirs = conversation_ids_for(other_id)
    query = Conversation.query.filter(Conversation.id.in_(mine), Conversation.id.in_(theirs))
    query = query.filter(Conversation.order_id == order_id if order_id else Conversation.order_id.is_(None))
    query = query.filter(Conversation.gig_id == gig_id if gig_id else Conversation.gig_id.is_(None))
    return query.order_by(Conversation.created_at.asc()).first()


def record_message(conversation, sender_id, content, message_type='text', attachments=None,
                   reply_to_id=None, system_data=None):
    """
    Add a message to a conversation and bump everyone else's unread count

    Returns the message and the ids of the other participants. Caller commits.
    """
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        content=content,
        message_type=message_type,
        attachments=json.dumps(attachments) if attachments else None,
        reply_to_id=reply_to_id,
        system_data=json.dumps(system_data) if system_data else None,
        read_by=json.dumps([])
    )
    db.session.add(message)

    conversation.last_message_content = content
    conversation.last_message_sender_id = sender_id
    conversation.last_message_type = message_type
    conversation.last_message_at = datetime.utcnow()

    recipient_ids = []
    for participant in ConversationParticipant.query.filter_by(conversation_id=conversation.id).all():
        if participant.user_id != sender_id:
            participant.unread_count = (participant.unread_count or 0) + 1
            recipient_ids.append(participant.user_id)

    db.session.flush()
    return message, recipient_ids


def broadcast_message(conversation, message, recipient_ids):
    """Fan a freshly committed message out to the conversation and recipients"""
    message_data = message.to_dict()
    emit_to_conversation(conversation.id, 'new_message', message_data)
    for recipient_id in recipient_ids:
        emit_to_user(recipient_id, 'conversation_updated', conversation.to_dict(for_user_id=recipient_id))
        emit_to_user(recipient_id, 'message_notification', {
            'conversation_id': conversation.id,
            'message': message_data
        })


def send_system_message(order, content, system_data=None):
    """Post a system message into the order's conversation on behalf of the seller"""
    try:
        conversation = get_or_create_order_conversation(order)
        message, recipient_ids = record_message(
            conversation,
            order.seller_id,
            content,
            message_type='system',
            system_data=system_data or {'order_id': order.id, 'status': order.status}
        )
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"System message error for order {order.id}: {str(e)}")
        return None

    broadcast_message(conversation, message, recipient_ids)
    return message


def add_status_history(order, status, note):
    db.session.add(OrderStatusHistory(order_id=order.id, status=status, note=note))


def add_order_system_message(order, sender_id, text):
    db.session.add(OrderMessage(order_id=order.id, sender_id=sender_id, message=text, is_system=True))


def order_status_payload(order, event_type, extra=None):
    payload = {
        'order_id': order.id,
        'status': order.status,
        'payment_status': order.payment_status,
        'type': event_type,
        'order': order.to_dict()
    }
    if extra:
        payload.update(extra)
    return payload


# Escrow helpers
def release_order_funds(order, note='Payment released to seller'):
    """
    Pay the seller's share out of escrow and complete the order

    Transfers to the seller's connected account when the order was charged
    through the processor and the seller has one; otherwise the release is
    settled internally. Caller commits.

    Raises:
        PaymentProcessorError: the transfer was rejected
    """
    from stripe_escrow import get_stripe_client, split_order_amount

    split = split_order_amount(order.amount)
    seller = db.session.get(User, order.seller_id)
    transfer_id = None

    if order.payment_intent_id and seller and seller.stripe_account_id:
        client = get_stripe_client()
        if client.is_available():
            result = client.create_transfer(
                amount_cents=split['seller_amount'],
                destination=seller.stripe_account_id,
                description=f"Payment for order {order.id}: {order.gig_title}",
                metadata={'orderId': str(order.id), 'platformFee': str(split['platform_fee'])}
            )
            if not result['success']:
                raise PaymentProcessorError(result['error'])
            transfer_id = result['transfer_id']
        else:
            app.logger.warning(f"Stripe unavailable, settling release of order {order.id} internally")

    order.payment_status = 'released'
    order.status = 'completed'
    order.completed_at = datetime.utcnow()
    add_status_history(order, 'completed', note)

    app.logger.info(f"Released ${split['seller_amount'] / 100:.2f} to seller {order.seller_id} for order {order.id}")
    return {
        'transfer_id': transfer_id,
        'seller_amount': split['seller_amount'] / 100,
        'platform_fee': split['platform_fee'] / 100
    }


def refund_order_payment(order):
    """
    Return the buyer's money for an order

    Uncaptured authorizations are voided, captured charges are refunded.
    Orders paid without the processor need no processor call.

    Raises:
        PaymentProcessorError: the processor rejected the void or refund
    """
    from stripe_escrow import get_stripe_client

    if not order.payment_intent_id:
        return None

    client = get_stripe_client()
    if not client.is_available():
        app.logger.warning(f"Stripe unavailable, refunding order {order.id} internally")
        return None

    intent = client.retrieve_payment_intent(order.payment_intent_id)
    if not intent['success']:
        raise PaymentProcessorError(intent['error'])

    if intent['status'] == 'succeeded':
        result = client.create_refund(order.payment_intent_id, metadata={'orderId': str(order.id)})
    elif intent['status'] == 'canceled':
        return None
    else:
        result = client.cancel_payment_intent(order.payment_intent_id)

    if not result['success']:
        raise PaymentProcessorError(result['error'])
    return result


def after_auto_release(order):
    notify_order_completed(order)
    emit_to_user(order.seller_id, 'payment_released', order_status_payload(order, 'payment_released'))
    emit_to_order(order.id, 'order_completed', order_status_payload(order, 'order_completed'))


# Error handlers
@app.errorhandler(404)
def not_found(e):
    return jsonify({'error': 'Resource not found'}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({'error': 'Method not allowed'}), 405


@app.errorhandler(413)
def file_too_large(e):
    return jsonify({'error': f'File too large. Maximum upload size is {MAX_FILE_SIZE // (1024 * 1024)}MB'}), 413


# Platform routes
@app.route('/')
def index():
    return jsonify({'name': 'Freelance Marketplace API', 'status': 'running'})


@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'timestamp': datetime.utcnow().isoformat()})


@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    return send_from_directory(UPLOAD_FOLDER, filename)


# Authentication routes
@app.route('/api/auth/register', methods=['POST'])
@rate_limit(max_attempts=10, window_minutes=60, lockout_minutes=15)
def register():
    try:
        data = request.get_json(silent=True)

        if not data or not data.get('name') or not data.get('email') or not data.get('password'):
            return jsonify({'error': 'Missing required fields'}), 400

        role = data.get('role', 'client')
        if role not in ['client', 'freelancer']:
            return jsonify({'error': 'Role must be either client or freelancer'}), 400

        try:
            email_info = validate_email(data['email'], check_deliverability=False)
            email = email_info.normalized.lower()
        except EmailNotValidError as e:
            return jsonify({'error': f'Invalid email: {str(e)}'}), 400

        is_valid, message = validate_password_strength(data['password'])
        if not is_valid:
            return jsonify({'error': message}), 400

        if User.query.filter_by(email=email).first():
            return jsonify({'error': 'Email already registered'}), 400

        new_user = User(
            name=sanitize_input(data['name'], max_length=120),
            email=email,
            password_hash=generate_password_hash(data['password']),
            role=role,
            location=sanitize_input(data.get('location', ''), max_length=100)
        )

        db.session.add(new_user)
        db.session.commit()

        session['user_id'] = new_user.id
        session.permanent = True

        reset_rate_limit(request.remote_addr)
        security_logger.log_authentication('register', email, 'success', user_id=new_user.id)

        return jsonify({
            'message': 'Registration successful',
            'user': new_user.to_dict()
        }), 201
    except Exception as e:
        db.session.rollback()
        # Log the error but don't expose details to user
        app.logger.error(f"Registration error: {str(e)}")
        return jsonify({'error': 'Registration failed. Please try again.'}), 500


@app.route('/api/auth/login', methods=['POST'])
@rate_limit(max_attempts=5, window_minutes=15, lockout_minutes=30)
def login():
    try:
        data = request.get_json(silent=True)

        if not data or not data.get('email') or not data.get('password'):
            return jsonify({'error': 'Missing email or password'}), 400

        try:
            email_info = validate_email(data['email'], check_deliverability=False)
            email = email_info.normalized.lower()
        except EmailNotValidError:
            return jsonify({'error': 'Invalid credentials'}), 401

        user = User.query.filter_by(email=email).first()

        # Google-only accounts have no password to check
        if user and user.password_hash and check_password_hash(user.password_hash, data['password']):
            session['user_id'] = user.id
            session.permanent = True

            reset_rate_limit(request.remote_addr)
            security_logger.log_authentication('login_success', email, 'success', user_id=user.id)

            return jsonify({
                'message': 'Login successful',
                'user': user.to_dict()
            }), 200

        security_logger.log_authentication('login_failure', email, 'failure', message='Invalid credentials')
        # Generic error message to prevent user enumeration
        return jsonify({'error': 'Invalid credentials'}), 401
    except Exception as e:
        app.logger.error(f"Login error: {str(e)}")
        return jsonify({'error': 'Login failed. Please try again.'}), 500


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    session.pop('user_id', None)
    return jsonify({'message': 'Logged out successfully'}), 200


@app.route('/api/auth/me', methods=['GET'])
@login_required
def get_me():
    user = current_user()
    if not user:
        session.pop('user_id', None)
        return jsonify({'error': 'Unauthorized - Please login'}), 401
    return jsonify({'user': user.to_dict()})


@app.route('/api/auth/profile', methods=['PUT'])
@login_required
def update_profile():
    try:
        user = current_user()
        if not user:
            return jsonify({'error': 'User not found'}), 404

        data = request.get_json(silent=True) or {}
        limits = {
            'name': 120,
            'bio': 2000,
            'location': 100,
            'avatar': 500,
            'profile_picture': 500,
            'avg_response_time': 50
        }
        for field, max_length in limits.items():
            if field in data:
                value = sanitize_input(data[field], max_length=max_length)
                if field == 'name' and not value:
                    return jsonify({'error': 'Name cannot be empty'}), 400
                setattr(user, field, value)

        db.session.commit()
        return jsonify({'message': 'Profile updated', 'user': user.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update profile error: {str(e)}")
        return jsonify({'error': 'Failed to update profile'}), 500


# User routes
@app.route('/api/users/search', methods=['GET'])
@login_required
@api_rate_limit(requests_per_minute=60)
def search_users():
    try:
        query_text = sanitize_input(request.args.get('q', ''), max_length=100) or ''
        if len(query_text) < 2:
            return jsonify({'error': 'Search query must be at least 2 characters'}), 400

        role = request.args.get('role')
        limit = parse_positive_int(request.args.get('limit'), 10, maximum=50)

        pattern = f'%{query_text}%'
        query = User.query.filter(
            or_(User.name.ilike(pattern), User.email.ilike(pattern)),
            User.id != session['user_id']
        )
        if role in ['client', 'freelancer']:
            query = query.filter(User.role == role)

        users = query.order_by(User.name.asc()).limit(limit).all()
        return jsonify({'users': [dict(u.summary(), email=u.email) for u in users]})
    except Exception as e:
        app.logger.error(f"User search error: {str(e)}")
        return jsonify({'error': 'Failed to search users'}), 500


@app.route('/api/users/activity', methods=['GET'])
@login_required
def user_activity():
    try:
        user = current_user()
        if not user:
            return jsonify({'error': 'User not found'}), 404

        activities = []
        if user.role == 'freelancer':
            for order in Order.query.filter_by(seller_id=user.id).order_by(Order.created_at.desc()).limit(10).all():
                activities.append({
                    'type': 'order_received',
                    'title': 'New order received',
                    'description': f"Order for \"{order.gig_title}\"",
                    'order_id': order.id,
                    'status': order.status,
                    'timestamp': isoformat(order.created_at)
                })
            for gig in Gig.query.filter_by(seller_id=user.id).order_by(Gig.created_at.desc()).limit(10).all():
                activities.append({
                    'type': 'gig_created',
                    'title': 'Gig created',
                    'description': gig.title,
                    'gig_id': gig.id,
                    'timestamp': isoformat(gig.created_at)
                })
        else:
            for order in Order.query.filter_by(buyer_id=user.id).order_by(Order.created_at.desc()).limit(10).all():
                activities.append({
                    'type': 'order_placed',
                    'title': 'Order placed',
                    'description': f"Ordered \"{order.gig_title}\"",
                    'order_id': order.id,
                    'status': order.status,
                    'timestamp': isoformat(order.created_at)
                })
            for review in Review.query.filter_by(user_id=user.id).order_by(Review.created_at.desc()).limit(10).all():
                activities.append({
                    'type': 'review_given',
                    'title': 'Review posted',
                    'description': f"Rated {review.rating}/5",
                    'gig_id': review.gig_id,
                    'timestamp': isoformat(review.created_at)
                })

        activities.sort(key=lambda a: a['timestamp'] or '', reverse=True)
        return jsonify({'activities': activities[:10]})
    except Exception as e:
        app.logger.error(f"User activity error: {str(e)}")
        return jsonify({'error': 'Failed to load activity'}), 500


# Gig routes
GIG_TEXT_FIELDS = {
    'title': 200,
    'description': 5000,
    'category': 50,
    'image': 500,
    'package_basic_title': 200,
    'package_basic_description': 2000
}
GIG_NUMBER_FIELDS = {
    'price': float,
    'delivery_time': int,
    'package_basic_price': float,
    'package_basic_delivery_time': int
}


def read_gig_payload():
    """Gig fields from either a JSON body or a multipart form"""
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def apply_gig_fields(gig, data):
    """Copy whitelisted fields onto a gig; returns an error message or None"""
    for field, max_length in GIG_TEXT_FIELDS.items():
        if field in data:
            setattr(gig, field, sanitize_input(data[field], max_length=max_length))

    for field, cast in GIG_NUMBER_FIELDS.items():
        if field in data and data[field] not in (None, ''):
            try:
                setattr(gig, field, cast(data[field]))
            except (TypeError, ValueError):
                return f'{field} must be a number'

    if 'images' in data:
        images = data['images']
        if isinstance(images, str):
            images = load_json(images, [images])
        gig.images = json.dumps(images if isinstance(images, list) else [])

    if not gig.title or not gig.description:
        return 'Title and description are required'
    if gig.price is None or gig.price <= 0:
        return 'Price must be greater than 0'
    if gig.delivery_time is None or gig.delivery_time <= 0:
        return 'Delivery time must be greater than 0'
    return None


def gig_with_seller(gig):
    data = gig.to_dict()
    seller = db.session.get(User, gig.seller_id)
    data['seller'] = seller.summary() if seller else None
    return data


@app.route('/api/gigs', methods=['POST'])
@login_required
def create_gig():
    try:
        data = read_gig_payload()
        gig = Gig(seller_id=session['user_id'])

        error = apply_gig_fields(gig, data)
        if error:
            return jsonify({'error': error}), 400

        image = request.files.get('image')
        if image and image.filename:
            if not allowed_file(image.filename):
                return jsonify({'error': 'Invalid image type'}), 400
            gig.image = save_upload(image, 'gigs')['file_url']

        db.session.add(gig)
        db.session.commit()
        return jsonify({'message': 'Gig created', 'gig': gig.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create gig error: {str(e)}")
        return jsonify({'error': 'Failed to create gig'}), 500


@app.route('/api/gigs', methods=['GET'])
@api_rate_limit(requests_per_minute=120)
def get_gigs():
    try:
        category = sanitize_input(request.args.get('category', ''), max_length=50)
        search = sanitize_input(request.args.get('search', ''), max_length=200)

        query = Gig.query
        if category:
            query = query.filter_by(category=category)
        if search:
            search_pattern = f'%{search}%'
            query = query.filter(
                (Gig.title.ilike(search_pattern)) | (Gig.description.ilike(search_pattern))
            )

        gigs = query.order_by(Gig.created_at.desc()).limit(100).all()
        return jsonify({'gigs': [gig_with_seller(g) for g in gigs]})
    except Exception as e:
        app.logger.error(f"Get gigs error: {str(e)}")
        return jsonify({'error': 'Failed to load gigs'}), 500


@app.route('/api/gigs/mine', methods=['GET'])
@login_required
def my_gigs():
    try:
        gigs = Gig.query.filter_by(seller_id=session['user_id']).order_by(Gig.created_at.desc()).all()
        return jsonify({'gigs': [g.to_dict() for g in gigs]})
    except Exception as e:
        app.logger.error(f"My gigs error: {str(e)}")
        return jsonify({'error': 'Failed to load gigs'}), 500


@app.route('/api/gigs/<int:gig_id>', methods=['GET'])
def get_gig(gig_id):
    try:
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404

        data = gig.to_dict()
        seller = db.session.get(User, gig.seller_id)
        data['seller'] = seller.to_dict() if seller else None
        if data['seller']:
            data['seller'].pop('email', None)
        data['reviews'] = [r.to_dict() for r in Review.query.filter_by(gig_id=gig.id).order_by(Review.created_at.desc()).all()]
        return jsonify({'gig': data})
    except Exception as e:
        app.logger.error(f"Get gig error: {str(e)}")
        return jsonify({'error': 'Failed to load gig'}), 500


@app.route('/api/gigs/<int:gig_id>', methods=['PUT'])
@login_required
def update_gig(gig_id):
    try:
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404
        if gig.seller_id != session['user_id']:
            return jsonify({'error': 'You can only edit your own gigs'}), 403

        error = apply_gig_fields(gig, read_gig_payload())
        if error:
            db.session.rollback()
            return jsonify({'error': error}), 400

        image = request.files.get('image')
        if image and image.filename:
            if not allowed_file(image.filename):
                db.session.rollback()
                return jsonify({'error': 'Invalid image type'}), 400
            gig.image = save_upload(image, 'gigs')['file_url']

        db.session.commit()
        return jsonify({'message': 'Gig updated', 'gig': gig.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update gig error: {str(e)}")
        return jsonify({'error': 'Failed to update gig'}), 500


@app.route('/api/gigs/<int:gig_id>', methods=['DELETE'])
@login_required
def delete_gig(gig_id):
    try:
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404
        if gig.seller_id != session['user_id']:
            return jsonify({'error': 'You can only delete your own gigs'}), 403

        # Orders and conversations keep their snapshot of the gig
        Order.query.filter_by(gig_id=gig.id).update({'gig_id': None})
        Conversation.query.filter_by(gig_id=gig.id).update({'gig_id': None})
        Notification.query.filter_by(gig_id=gig.id).update({'gig_id': None})
        SavedGig.query.filter_by(gig_id=gig.id).delete()
        Review.query.filter_by(gig_id=gig.id).delete()
        db.session.delete(gig)
        db.session.commit()
        return jsonify({'message': 'Gig deleted'})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete gig error: {str(e)}")
        return jsonify({'error': 'Failed to delete gig'}), 500


# Review routes
@app.route('/api/reviews/<int:gig_id>', methods=['GET'])
def gig_reviews(gig_id):
    try:
        if not db.session.get(Gig, gig_id):
            return jsonify({'error': 'Gig not found'}), 404
        reviews = Review.query.filter_by(gig_id=gig_id).order_by(Review.created_at.desc()).all()
        return jsonify({'reviews': [r.to_dict() for r in reviews]})
    except Exception as e:
        app.logger.error(f"Get reviews error: {str(e)}")
        return jsonify({'error': 'Failed to load reviews'}), 500


@app.route('/api/reviews/<int:gig_id>', methods=['POST'])
@login_required
def add_review(gig_id):
    try:
        gig = db.session.get(Gig, gig_id)
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404

        data = request.get_json(silent=True) or {}
        try:
            rating = int(data.get('rating'))
        except (TypeError, ValueError):
            return jsonify({'error': 'Rating must be between 1 and 5'}), 400
        if rating < 1 or rating > 5:
            return jsonify({'error': 'Rating must be between 1 and 5'}), 400

        user = current_user()
        if Review.query.filter_by(gig_id=gig.id, user_id=user.id).first():
            return jsonify({'error': 'You have already reviewed this gig'}), 400

        review = Review(
            gig_id=gig.id,
            user_id=user.id,
            user_name=user.name,
            rating=rating,
            comment=sanitize_input(data.get('comment', ''), max_length=2000)
        )
        db.session.add(review)
        db.session.flush()

        stats = db.session.query(func.avg(Review.rating), func.count(Review.id)).filter_by(gig_id=gig.id).one()
        gig.average_rating = round(float(stats[0] or 0), 1)
        gig.total_reviews = stats[1]
        db.session.commit()

        notify_review_received(gig, user, rating)
        return jsonify({'message': 'Review added', 'review': review.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Add review error: {str(e)}")
        return jsonify({'error': 'Failed to add review'}), 500


# Saved gig routes
@app.route('/api/gigs/<int:gig_id>/save', methods=['POST'])
@login_required
def save_gig(gig_id):
    try:
        if not db.session.get(Gig, gig_id):
            return jsonify({'error': 'Gig not found'}), 404
        if SavedGig.query.filter_by(user_id=session['user_id'], gig_id=gig_id).first():
            return jsonify({'error': 'Gig already saved'}), 400

        db.session.add(SavedGig(user_id=session['user_id'], gig_id=gig_id))
        db.session.commit()
        return jsonify({'message': 'Gig saved', 'is_saved': True}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Save gig error: {str(e)}")
        return jsonify({'error': 'Failed to save gig'}), 500


@app.route('/api/gigs/<int:gig_id>/save', methods=['DELETE'])
@login_required
def unsave_gig(gig_id):
    try:
        saved = SavedGig.query.filter_by(user_id=session['user_id'], gig_id=gig_id).first()
        if not saved:
            return jsonify({'error': 'Gig is not in your saved list'}), 404

        db.session.delete(saved)
        db.session.commit()
        return jsonify({'message': 'Gig removed from saved list', 'is_saved': False})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Unsave gig error: {str(e)}")
        return jsonify({'error': 'Failed to remove saved gig'}), 500


@app.route('/api/gigs/saved', methods=['GET'])
@login_required
def saved_gigs():
    try:
        saved = SavedGig.query.filter_by(user_id=session['user_id']).order_by(SavedGig.created_at.desc()).all()
        gigs = []
        for entry in saved:
            gig = db.session.get(Gig, entry.gig_id)
            if gig:
                data = gig_with_seller(gig)
                data['saved_at'] = isoformat(entry.created_at)
                gigs.append(data)
        return jsonify({'gigs': gigs})
    except Exception as e:
        app.logger.error(f"Saved gigs error: {str(e)}")
        return jsonify({'error': 'Failed to load saved gigs'}), 500


@app.route('/api/gigs/<int:gig_id>/saved', methods=['GET'])
@login_required
def is_gig_saved(gig_id):
    saved = SavedGig.query.filter_by(user_id=session['user_id'], gig_id=gig_id).first()
    return jsonify({'is_saved': saved is not None})


# Order routes
def load_order_for_party(order_id, user_id):
    """Fetch an order the user is buyer or seller on; returns (order, error_response)"""
    order = db.session.get(Order, order_id)
    if not order:
        return None, (jsonify({'error': 'Order not found'}), 404)
    if not order.party_role(user_id):
        return None, (jsonify({'error': 'You do not have access to this order'}), 403)
    return order, None


def paginate_orders(query):
    page = parse_positive_int(request.args.get('page'), 1)
    limit = parse_positive_int(request.args.get('limit'), 10, maximum=100)
    total = query.count()
    orders = query.order_by(Order.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        'orders': [o.to_dict() for o in orders],
        'total_pages': (total + limit - 1) // limit,
        'current_page': page,
        'total': total
    }


@app.route('/api/orders', methods=['POST'])
@login_required
def create_order():
    try:
        data = request.get_json(silent=True) or {}
        gig = db.session.get(Gig, data.get('gig_id')) if data.get('gig_id') else None
        if not gig:
            return jsonify({'error': 'Gig not found'}), 404

        buyer_id = session['user_id']
        if gig.seller_id == buyer_id:
            return jsonify({'error': 'You cannot order your own gig'}), 400

        package_type = data.get('package_type', 'basic')
        if package_type not in ['basic', 'standard', 'premium']:
            return jsonify({'error': 'Invalid package type'}), 400

        pricing = calculate_order_pricing(gig.price)
        order = Order(
            gig_id=gig.id,
            buyer_id=buyer_id,
            seller_id=gig.seller_id,
            gig_title=gig.title,
            gig_image=gig.image,
            package_type=package_type,
            amount=pricing['amount'],
            service_fee=pricing['service_fee'],
            total_amount=pricing['total_amount'],
            delivery_time=gig.delivery_time,
            delivery_date=datetime.utcnow() + timedelta(days=gig.delivery_time),
            requirements=sanitize_input(data.get('requirements', ''), max_length=5000),
            status='pending',
            payment_status='pending'
        )
        db.session.add(order)
        db.session.flush()
        add_status_history(order, 'pending', 'Order created and awaiting payment')
        db.session.commit()

        app.logger.info(f"Order {order.id} created by buyer {buyer_id} for gig {gig.id}")
        notify_order_placed(order)
        emit_to_user(order.seller_id, 'order_status_update', order_status_payload(order, 'order_placed'))

        return jsonify({'message': 'Order created', 'order': order.to_dict(detail=True)}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create order error: {str(e)}")
        return jsonify({'error': 'Failed to create order'}), 500


@app.route('/api/orders/<int:order_id>/payment', methods=['POST'])
@login_required
def process_order_payment(order_id):
    """Mark an order paid without the card processor"""
    try:
        order = db.session.get(Order, order_id)
        if not order:
            return jsonify({'error': 'Order not found'}), 404
        if order.buyer_id != session['user_id']:
            return jsonify({'error': 'Only the buyer can pay for this order'}), 403
        if order.payment_status in ['paid', 'released']:
            return jsonify({'error': 'Order has already been paid'}), 400
        if order.status == 'cancelled':
            return jsonify({'error': 'Order has been cancelled'}), 400

        data = request.get_json(silent=True) or {}
        order.payment_method = sanitize_input(data.get('payment_method', 'card'), max_length=50)
        order.payment_status = 'paid'
        order.status = 'active'
        add_status_history(order, 'active', 'Payment received, order is now active')
        db.session.commit()

        app.logger.info(f"Order {order.id} paid via {order.payment_method}")
        send_system_message(order, f"Payment of ${order.total_amount:.2f} received. The order is now active.")
        notify_payment_received(order)
        emit_to_user(order.seller_id, 'order_status_update', order_status_payload(order, 'payment_received'))
        emit_to_order(order.id, 'order_activated', order_status_payload(order, 'order_activated'))

        return jsonify({'message': 'Payment processed', 'order': order.to_dict(detail=True)})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Order payment error: {str(e)}")
        return jsonify({'error': 'Failed to process payment'}), 500


@app.route('/api/orders/buyer', methods=['GET'])
@login_required
def buyer_orders():
    try:
        query = Order.query.filter_by(buyer_id=session['user_id'])
        status = request.args.get('status')
        if status:
            query = query.filter_by(status=status)
        return jsonify(paginate_orders(query))
    except Exception as e:
        app.logger.error(f"Buyer orders error: {str(e)}")
        return jsonify({'error': 'Failed to load orders'}), 500


@app.route('/api/orders/seller', methods=['GET'])
@login_required
def seller_orders():
    try:
        query = Order.query.filter_by(seller_id=session['user_id'])
        status = request.args.get('status')
        if status:
            query = query.filter_by(status=status)
        return jsonify(paginate_orders(query))
    except Exception as e:
        app.logger.error(f"Seller orders error: {str(e)}")
        return jsonify({'error': 'Failed to load orders'}), 500


def count_by_status(orders):
    counts = {status: 0 for status in ['pending', 'active', 'delivered', 'revision', 'completed', 'cancelled']}
    for order in orders:
        counts[order.status] = counts.get(order.status, 0) + 1
    return counts


@app.route('/api/orders/buyer/stats', methods=['GET'])
@login_required
def buyer_stats():
    try:
        user_id = session['user_id']
        orders = Order.query.filter_by(buyer_id=user_id).order_by(Order.created_at.desc()).all()
        counts = count_by_status(orders)
        total_spent = sum(o.total_amount for o in orders if o.payment_status in ['paid', 'released'])

        return jsonify({
            'total_orders': len(orders),
            'active_orders': counts['active'] + counts['revision'],
            'delivered_orders': counts['delivered'],
            'completed_orders': counts['completed'],
            'cancelled_orders': counts['cancelled'],
            'pending_orders': counts['pending'],
            'total_spent': round(total_spent, 2),
            'reviews_given': Review.query.filter_by(user_id=user_id).count(),
            'saved_gigs': SavedGig.query.filter_by(user_id=user_id).count(),
            'recent_orders': [o.to_dict() for o in orders[:10]]
        })
    except Exception as e:
        app.logger.error(f"Buyer stats error: {str(e)}")
        return jsonify({'error': 'Failed to load stats'}), 500


@app.route('/api/orders/seller/stats', methods=['GET'])
@login_required
def seller_stats():
    try:
        user_id = session['user_id']
        orders = Order.query.filter_by(seller_id=user_id).order_by(Order.created_at.desc()).all()
        counts = count_by_status(orders)
        total_earnings = sum(seller_net_amount(o.amount) for o in orders if o.payment_status == 'released')
        pending_earnings = sum(seller_net_amount(o.amount) for o in orders if o.payment_status == 'paid')
        rated = [o.buyer_rating for o in orders if o.buyer_rating]

        return jsonify({
            'total_orders': len(orders),
            'active_orders': counts['active'] + counts['revision'],
            'delivered_orders': counts['delivered'],
            'completed_orders': counts['completed'],
            'cancelled_orders': counts['cancelled'],
            'pending_orders': counts['pending'],
            'total_earnings': round(total_earnings, 2),
            'pending_earnings': round(pending_earnings, 2),
            'average_rating': round(sum(rated) / len(rated), 1) if rated else 0,
            'total_gigs': Gig.query.filter_by(seller_id=user_id).count(),
            'recent_orders': [o.to_dict() for o in orders[:10]]
        })
    except Exception as e:
        app.logger.error(f"Seller stats error: {str(e)}")
        return jsonify({'error': 'Failed to load stats'}), 500


@app.route('/api/orders/<int:order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    try:
        order, error = load_order_for_party(order_id, session['user_id'])
        if error:
            return error
        return jsonify({'order': order.to_dict(detail=True)})
    except Exception as e:
        app.logger.error(f"Get order error: {str(e)}")
        return jsonify({'error': 'Failed to load order'}), 500


# Order lifecycle
def deliver_order(order_id, user_id, note, files):
    """Seller hands in work for an active order or a requested revision"""
    order = db.session.get(Order, order_id)
    if not order:
        return {'error': 'Order not found'}, 404
    if order.seller_id != user_id:
        return {'error': 'Only the seller can deliver this order'}, 403
    if order.status not in ['active', 'revision']:
        return {'error': f'Order cannot be delivered while {order.status}'}, 400

    is_revision = order.status == 'revision'
    order.status = 'delivered'
    order.delivered_at = datetime.utcnow()
    order.delivery_note = note

    if files:
        DeliveryFile.query.filter_by(order_id=order.id).delete()
        for file_info in files:
            db.session.add(DeliveryFile(
                order_id=order.id,
                file_name=file_info.get('file_name') or 'file',
                file_url=file_info.get('file_url'),
                file_type=file_info.get('file_type'),
                file_size=file_info.get('file_size'),
                public_id=file_info.get('public_id')
            ))

    if is_revision:
        history_note = f'Revision delivered ({order.revision_count}/{order.max_revisions})'
    else:
        history_note = 'Order delivered'
    add_status_history(order, 'delivered', history_note)
    add_order_system_message(order, user_id, f"{history_note}{': ' + note if note else ''}")
    db.session.commit()

    app.logger.info(f"Order {order.id} delivered by seller {user_id}")
    send_system_message(order, f"{history_note}. Please review the delivery and accept it or request a revision.")
    notify_order_delivered(order)
    emit_to_user(order.buyer_id, 'order_status_update', order_status_payload(order, 'order_delivered'))
    emit_to_order(order.id, 'order_delivered', order_status_payload(order, 'order_delivered', {
        'delivery_note': note,
        'is_revision': is_revision
    }))
    return {'message': 'Order delivered successfully', 'order': order.to_dict(detail=True)}, 200


def accept_delivery(order_id, user_id, rating=None, review=None):
    """Buyer accepts the delivery, which releases escrow and completes the order"""
    order = db.session.get(Order, order_id)
    if not order:
        return {'error': 'Order not found'}, 404
    if order.buyer_id != user_id:
        return {'error': 'Only the buyer can accept this delivery'}, 403
    if order.status != 'delivered':
        return {'error': 'Only delivered orders can be accepted'}, 400
    if order.payment_status == 'processing':
        return {'error': 'Payment has not been confirmed yet'}, 400

    if rating not in (None, ''):
        try:
            rating = int(rating)
        except (TypeError, ValueError):
            return {'error': 'Rating must be between 1 and 5'}, 400
        if rating < 1 or rating > 5:
            return {'error': 'Rating must be between 1 and 5'}, 400
        order.buyer_rating = rating
        order.buyer_review = sanitize_input(review, max_length=2000) if review else None
        order.is_reviewed = True
    else:
        rating = None

    release = None
    if order.payment_status == 'paid':
        release = release_order_funds(order, 'Delivery accepted, payment released to seller')
    else:
        order.status = 'completed'
        order.completed_at = datetime.utcnow()
        add_status_history(order, 'completed', 'Delivery accepted')

    completion = 'Order completed'
    if rating:
        completion += f'. Rating: {rating}/5'
    if order.buyer_review:
        completion += f'. Review: {order.buyer_review}'
    add_order_system_message(order, user_id, completion)
    db.session.commit()

    if release:
        security_logger.log_financial('payment_released', f'Escrow released for order {order.id}',
                                      release['seller_amount'], 'order', order.id)
    send_system_message(order, completion, {'order_id': order.id, 'status': 'completed', 'rating': rating})
    notify_order_completed(order)
    emit_to_user(order.seller_id, 'order_status_update', order_status_payload(order, 'order_completed'))
    emit_to_order(order.id, 'order_completed', order_status_payload(order, 'order_completed'))
    if release:
        emit_to_user(order.seller_id, 'payment_released', order_status_payload(order, 'payment_released', release))
    return {'message': 'Delivery accepted and order completed', 'order': order.to_dict(detail=True)}, 200


def request_revision(order_id, user_id, note):
    """Buyer sends a delivered order back, bounded by max_revisions"""
    order = db.session.get(Order, order_id)
    if not order:
        return {'error': 'Order not found'}, 404
    if order.buyer_id != user_id:
        return {'error': 'Only the buyer can request a revision'}, 403
    if order.status != 'delivered':
        return {'error': 'Revisions can only be requested on delivered orders'}, 400
    if (order.revision_count or 0) >= order.max_revisions:
        return {'error': 'Maximum revisions exceeded'}, 400
    if not note:
        return {'error': 'Please describe the changes you need'}, 400

    order.status = 'revision'
    order.revision_count = (order.revision_count or 0) + 1
    order.revision_note = note
    order.revision_requested_at = datetime.utcnow()
    history_note = f'Revision requested ({order.revision_count}/{order.max_revisions})'
    add_status_history(order, 'revision', history_note)
    add_order_system_message(order, user_id, f"{history_note}: {note}")
    db.session.commit()

    app.logger.info(f"Revision {order.revision_count} requested on order {order.id}")
    send_system_message(order, f"{history_note}: {note}")
    emit_to_user(order.seller_id, 'order_status_update', order_status_payload(order, 'revision_requested'))
    emit_to_order(order.id, 'revision_requested', order_status_payload(order, 'revision_requested', {
        'revision_note': note
    }))
    return {'message': 'Revision requested', 'order': order.to_dict(detail=True)}, 200


@app.route('/api/orders/<int:order_id>/deliver', methods=['PUT'])
@login_required
def deliver_order_route(order_id):
    try:
        data = request.get_json(silent=True) or {}
        files = data.get('files') or []
        if not isinstance(files, list):
            return jsonify({'error': 'files must be a list'}), 400
        payload, status = deliver_order(
            order_id,
            session['user_id'],
            sanitize_input(data.get('delivery_note') or data.get('note', ''), max_length=5000),
            [f for f in files if isinstance(f, dict) and f.get('file_url')]
        )
        return jsonify(payload), status
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Deliver order error: {str(e)}")
        return jsonify({'error': 'Failed to deliver order'}), 500


@app.route('/api/orders/<int:order_id>/accept', methods=['PUT'])
@login_required
def accept_order_route(order_id):
    try:
        data = request.get_json(silent=True) or {}
        payload, status = accept_delivery(order_id, session['user_id'], data.get('rating'), data.get('review'))
        return jsonify(payload), status
    except PaymentProcessorError as e:
        db.session.rollback()
        app.logger.error(f"Release transfer failed for order {order_id}: {str(e)}")
        return jsonify({'error': f'Payment release failed: {str(e)}'}), 502
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Accept order error: {str(e)}")
        return jsonify({'error': 'Failed to accept delivery'}), 500


@app.route('/api/orders/<int:order_id>/revision', methods=['PUT'])
@login_required
def revision_order_route(order_id):
    try:
        data = request.get_json(silent=True) or {}
        note = sanitize_input(data.get('revision_note') or data.get('note', ''), max_length=5000)
        payload, status = request_revision(order_id, session['user_id'], note)
        return jsonify(payload), status
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Request revision error: {str(e)}")
        return jsonify({'error': 'Failed to request revision'}), 500


@app.route('/api/orders/<int:order_id>/cancel', methods=['PUT'])
@login_required
def cancel_order(order_id):
    try:
        user_id = session['user_id']
        order, error = load_order_for_party(order_id, user_id)
        if error:
            return error
        if order.status == 'completed':
            return jsonify({'error': 'Completed orders cannot be cancelled'}), 400
        if order.status == 'cancelled':
            return jsonify({'error': 'Order is already cancelled'}), 400

        data = request.get_json(silent=True) or {}
        reason = sanitize_input(data.get('reason', ''), max_length=1000)
        role = order.party_role(user_id)

        refunded = order.payment_status in ['paid', 'processing']
        if refunded:
            refund_order_payment(order)
        order.payment_status = 'refunded'

        order.status = 'cancelled'
        note = f"Order cancelled by {role}" + (f": {reason}" if reason else '')
        add_status_history(order, 'cancelled', note)
        add_order_system_message(order, user_id, note)
        db.session.commit()

        app.logger.info(f"Order {order.id} cancelled by {role} {user_id}")
        if refunded:
            security_logger.log_financial('payment_refunded', f'Refund on cancellation of order {order.id}',
                                          order.total_amount, 'order', order.id)
        send_system_message(order, note)
        notify_order_cancelled(order, user_id)
        for party_id in [order.buyer_id, order.seller_id]:
            emit_to_user(party_id, 'order_status_update', order_status_payload(order, 'order_cancelled'))
        emit_to_order(order.id, 'order_cancelled', order_status_payload(order, 'order_cancelled', {'reason': reason}))

        return jsonify({'message': 'Order cancelled', 'order': order.to_dict(detail=True)})
    except PaymentProcessorError as e:
        db.session.rollback()
        app.logger.error(f"Refund failed while cancelling order {order_id}: {str(e)}")
        return jsonify({'error': f'Refund failed: {str(e)}'}), 502
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Cancel order error: {str(e)}")
        return jsonify({'error': 'Failed to cancel order'}), 500


@app.route('/api/orders/<int:order_id>/messages', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=60)
def add_order_message(order_id):
    try:
        user_id = session['user_id']
        order, error = load_order_for_party(order_id, user_id)
        if error:
            return error

        data = request.get_json(silent=True) or {}
        text = sanitize_input(data.get('message', ''), max_length=5000)
        if not text:
            return jsonify({'error': 'Message cannot be empty'}), 400

        order_message = OrderMessage(order_id=order.id, sender_id=user_id, message=text)
        db.session.add(order_message)

        # Mirror into the order's chat conversation
        conversation = get_or_create_order_conversation(order)
        message, recipient_ids = record_message(conversation, user_id, text)
        db.session.commit()

        emit_to_order(order.id, 'new_order_message', order_message.to_dict())
        broadcast_message(conversation, message, recipient_ids)

        return jsonify({'message': 'Message sent', 'order_message': order_message.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Order message error: {str(e)}")
        return jsonify({'error': 'Failed to send message'}), 500


# Delivery routes (multipart uploads)
@app.route('/api/delivery/orders/<int:order_id>/deliver', methods=['POST'])
@login_required
def deliver_with_files(order_id):
    try:
        order = db.session.get(Order, order_id)
        if not order:
            return jsonify({'error': 'Order not found'}), 404
        if order.seller_id != session['user_id']:
            return jsonify({'error': 'Only the seller can deliver this order'}), 403

        uploads = [f for f in request.files.getlist('files') if f and f.filename]
        for upload in uploads:
            if not allowed_file(upload.filename, FILE_EXTENSIONS):
                return jsonify({'error': f'File type not allowed: {upload.filename}'}), 400

        files = []
        if order.status in ['active', 'revision']:
            files = [save_upload(upload, 'deliveries') for upload in uploads]

        note = sanitize_input(request.form.get('delivery_note') or request.form.get('note', ''), max_length=5000)
        payload, status = deliver_order(order_id, session['user_id'], note, files)
        return jsonify(payload), status
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delivery upload error: {str(e)}")
        return jsonify({'error': 'Failed to deliver order'}), 500


@app.route('/api/delivery/orders/<int:order_id>/accept', methods=['POST'])
@login_required
def delivery_accept(order_id):
    return accept_order_route(order_id)


@app.route('/api/delivery/orders/<int:order_id>/revision', methods=['POST'])
@login_required
def delivery_revision(order_id):
    return revision_order_route(order_id)


@app.route('/api/delivery/orders/<int:order_id>/files', methods=['GET'])
@login_required
def delivery_files(order_id):
    try:
        order, error = load_order_for_party(order_id, session['user_id'])
        if error:
            return error
        files = DeliveryFile.query.filter_by(order_id=order.id).order_by(DeliveryFile.uploaded_at.asc()).all()
        return jsonify({
            'files': [f.to_dict() for f in files],
            'delivery_note': order.delivery_note,
            'delivered_at': isoformat(order.delivered_at)
        })
    except Exception as e:
        app.logger.error(f"Delivery files error: {str(e)}")
        return jsonify({'error': 'Failed to load delivery files'}), 500


# Development helpers, disabled in production
@app.route('/api/test/orders/<int:order_id>/status', methods=['POST'])
@login_required
def set_order_status(order_id):
    if IS_PRODUCTION:
        return jsonify({'error': 'Resource not found'}), 404
    try:
        order = db.session.get(Order, order_id)
        if not order:
            return jsonify({'error': 'Order not found'}), 404

        data = request.get_json(silent=True) or {}
        status = data.get('status')
        if status not in ['pending', 'active', 'delivered', 'revision', 'completed', 'cancelled']:
            return jsonify({'error': 'Invalid status'}), 400

        if status == 'revision':
            order.revision_count = (order.revision_count or 0) + 1
            order.revision_requested_at = datetime.utcnow()
        elif status == 'delivered':
            order.delivered_at = datetime.utcnow()
        elif status == 'completed':
            order.completed_at = datetime.utcnow()
        if status in ['active', 'delivered', 'revision'] and order.payment_status == 'pending':
            order.payment_status = 'paid'

        order.status = status
        add_status_history(order, status, f'Status set to {status} for testing')
        db.session.commit()

        emit_to_order(order.id, 'order_status_update', order_status_payload(order, 'test_status_change'))
        return jsonify({'message': f'Order status updated to {status}', 'order': order.to_dict(detail=True)})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Test status update error: {str(e)}")
        return jsonify({'error': 'Failed to update order status'}), 500


@app.route('/api/test/orders', methods=['GET'])
@login_required
def list_all_orders():
    if IS_PRODUCTION:
        return jsonify({'error': 'Resource not found'}), 404
    try:
        orders = Order.query.order_by(Order.created_at.desc()).all()
        return jsonify({'orders': [o.to_dict() for o in orders], 'total': len(orders)})
    except Exception as e:
        app.logger.error(f"List orders error: {str(e)}")
        return jsonify({'error': 'Failed to load orders'}), 500


# Payment routes (escrow)
@app.route('/api/payments/create-payment-intent', methods=['POST'])
@login_required
def create_payment_intent():
    try:
        from stripe_escrow import get_stripe_client, split_order_amount

        data = request.get_json(silent=True) or {}
        order = db.session.get(Order, data.get('order_id')) if data.get('order_id') else None
        if not order:
            return jsonify({'error': 'Order not found'}), 404
        if order.buyer_id != session['user_id']:
            return jsonify({'error': 'Only the buyer can pay for this order'}), 403
        if order.payment_status in ['paid', 'released']:
            return jsonify({'error': 'Order has already been paid'}), 400
        if order.status == 'cancelled':
            return jsonify({'error': 'Order has been cancelled'}), 400

        client = get_stripe_client()
        if not client.is_available():
            app.logger.warning("Payment intent requested but Stripe is not configured")
            return jsonify({'error': 'Payment processing is not available'}), 503

        split = split_order_amount(order.amount)
        buyer = db.session.get(User, order.buyer_id)
        result = client.create_payment_intent(
            amount_cents=round_half_up(order.total_amount * 100),
            description=f"Payment for: {order.gig_title}",
            metadata={
                'orderId': str(order.id),
                'buyerId': str(order.buyer_id),
                'sellerId': str(order.seller_id),
                'sellerAmount': str(split['seller_amount']),
                'platformFee': str(split['platform_fee'])
            },
            customer_id=buyer.stripe_customer_id if buyer else None
        )
        if not result['success']:
            app.logger.error(f"Payment intent failed for order {order.id}: {result['error']}")
            return jsonify({'error': result['error']}), 502

        order.payment_intent_id = result['payment_intent_id']
        order.payment_status = 'processing'
        order.payment_method = 'card'
        db.session.commit()

        return jsonify({
            'client_secret': result['client_secret'],
            'payment_intent_id': result['payment_intent_id']
        })
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create payment intent error: {str(e)}")
        return jsonify({'error': 'Failed to create payment intent'}), 500


@app.route('/api/payments/confirm-payment', methods=['POST'])
@login_required
def confirm_payment():
    try:
        from stripe_escrow import get_stripe_client

        data = request.get_json(silent=True) or {}
        payment_intent_id = data.get('payment_intent_id')
        if not payment_intent_id:
            return jsonify({'error': 'payment_intent_id is required'}), 400

        client = get_stripe_client()
        if not client.is_available():
            return jsonify({'error': 'Payment processing is not available'}), 503

        intent = client.retrieve_payment_intent(payment_intent_id)
        if not intent['success']:
            return jsonify({'error': intent['error']}), 502
        if intent['status'] != 'requires_capture':
            return jsonify({'error': 'Payment has not been authorized'}), 400

        order = Order.query.filter_by(payment_intent_id=payment_intent_id).first()
        if not order:
            return jsonify({'error': 'Order not found'}), 404
        if order.buyer_id != session['user_id']:
            return jsonify({'error': 'Only the buyer can confirm this payment'}), 403
        if order.payment_status in ['paid', 'released']:
            return jsonify({'error': 'Order has already been paid'}), 400

        captured = client.capture_payment_intent(payment_intent_id)
        if not captured['success']:
            app.logger.error(f"Capture failed for order {order.id}: {captured['error']}")
            return jsonify({'error': captured['error']}), 502

        order.stripe_charge_id = captured.get('charge_id')
        order.payment_status = 'paid'
        order.status = 'active'
        add_status_history(order, 'active', 'Payment confirmed, order is now active')
        db.session.commit()

        security_logger.log_financial('payment_captured', f'Payment captured for order {order.id}',
                                      order.total_amount, 'order', order.id)
        send_system_message(order, f"Payment of ${order.total_amount:.2f} is held in escrow. Work can begin.")
        notify_payment_received(order)
        emit_to_user(order.seller_id, 'payment_received', order_status_payload(order, 'payment_received'))
        emit_to_user(order.buyer_id, 'payment_confirmed', order_status_payload(order, 'payment_confirmed'))
        emit_to_order(order.id, 'order_activated', order_status_payload(order, 'order_activated'))

        return jsonify({'message': 'Payment confirmed', 'order': order.to_dict(detail=True)})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Confirm payment error: {str(e)}")
        return jsonify({'error': 'Failed to confirm payment'}), 500


@app.route('/api/payments/release/<int:order_id>', methods=['POST'])
@login_required
def release_payment(order_id):
    try:
        order = db.session.get(Order, order_id)
        if not order:
            return jsonify({'error': 'Order not found'}), 404
        if order.buyer_id != session['user_id']:
            return jsonify({'error': 'Only the buyer can release payment'}), 403
        if order.payment_status == 'released':
            return jsonify({'error': 'Payment has already been released'}), 400
        if order.status != 'delivered':
            return jsonify({'error': 'Payment can only be released for delivered orders'}), 400
        if order.payment_status != 'paid':
            return jsonify({'error': 'Order has not been paid'}), 400

        release = release_order_funds(order)
        db.session.commit()

        security_logger.log_financial('payment_released', f'Escrow released for order {order.id}',
                                      release['seller_amount'], 'order', order.id)
        send_system_message(order, f"Payment of ${release['seller_amount']:.2f} released to the seller.")
        notify_order_completed(order)
        emit_to_user(order.seller_id, 'payment_released', order_status_payload(order, 'payment_released', release))
        emit_to_order(order.id, 'order_completed', order_status_payload(order, 'order_completed'))

        return jsonify({'message': 'Payment released', 'release': release, 'order': order.to_dict()})
    except PaymentProcessorError as e:
        db.session.rollback()
        app.logger.error(f"Release transfer failed for order {order_id}: {str(e)}")
        return jsonify({'error': f'Payment release failed: {str(e)}'}), 502
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Release payment error: {str(e)}")
        return jsonify({'error': 'Failed to release payment'}), 500


@app.route('/api/payments/refund/<int:order_id>', methods=['POST'])
@login_required
def refund_payment(order_id):
    try:
        user_id = session['user_id']
        order, error = load_order_for_party(order_id, user_id)
        if error:
            return error
        if order.payment_status == 'refunded':
            return jsonify({'error': 'Payment has already been refunded'}), 400
        if order.payment_status == 'released':
            return jsonify({'error': 'Released payments cannot be refunded'}), 400
        if order.payment_status == 'pending':
            return jsonify({'error': 'Order has not been paid'}), 400

        data = request.get_json(silent=True) or {}
        reason = sanitize_input(data.get('reason', ''), max_length=1000)

        result = refund_order_payment(order)
        order.payment_status = 'refunded'
        order.status = 'cancelled'
        note = 'Payment refunded to buyer' + (f": {reason}" if reason else '')
        add_status_history(order, 'cancelled', note)
        db.session.commit()

        security_logger.log_financial('payment_refunded', f'Refund for order {order.id}',
                                      order.total_amount, 'order', order.id)
        send_system_message(order, note)
        notify_order_cancelled(order, user_id)
        emit_to_user(order.buyer_id, 'payment_refunded', order_status_payload(order, 'payment_refunded'))
        emit_to_order(order.id, 'order_cancelled', order_status_payload(order, 'order_cancelled', {'reason': reason}))

        return jsonify({
            'message': 'Payment refunded',
            'refund_id': result.get('refund_id') if result else None,
            'order': order.to_dict()
        })
    except PaymentProcessorError as e:
        db.session.rollback()
        app.logger.error(f"Refund failed for order {order_id}: {str(e)}")
        return jsonify({'error': f'Refund failed: {str(e)}'}), 502
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Refund payment error: {str(e)}")
        return jsonify({'error': 'Failed to refund payment'}), 500


def available_balance(seller_id):
    """Released earnings minus everything already withdrawn"""
    released = Order.query.filter_by(seller_id=seller_id, payment_status='released').all()
    earned = sum(seller_net_amount(o.amount) for o in released)
    withdrawn = db.session.query(func.coalesce(func.sum(Withdrawal.amount), 0)).filter(
        Withdrawal.seller_id == seller_id,
        Withdrawal.status != 'failed'
    ).scalar()
    return round(earned - float(withdrawn or 0), 2)


@app.route('/api/payments/earnings', methods=['GET'])
@app.route('/api/payments/seller/earnings', methods=['GET'])
@login_required
def seller_earnings():
    try:
        seller_id = session['user_id']
        orders = Order.query.filter_by(seller_id=seller_id).all()
        released = [o for o in orders if o.payment_status == 'released']
        in_escrow = [o for o in orders if o.payment_status == 'paid']

        month_start = datetime.utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        monthly = [o for o in released if o.completed_at and o.completed_at >= month_start]

        recent = sorted(released, key=lambda o: o.completed_at or o.updated_at, reverse=True)[:5]
        recent_orders = []
        for order in recent:
            data = order.to_dict()
            data['net_amount'] = seller_net_amount(order.amount)
            recent_orders.append(data)

        return jsonify({
            'total_earnings': round(sum(seller_net_amount(o.amount) for o in released), 2),
            'monthly_earnings': round(sum(seller_net_amount(o.amount) for o in monthly), 2),
            'pending_earnings': round(sum(seller_net_amount(o.amount) for o in in_escrow), 2),
            'available_balance': available_balance(seller_id),
            'completed_orders': len(released),
            'active_orders': len([o for o in orders if o.status in ['active', 'delivered', 'revision']]),
            'recent_orders': recent_orders
        })
    except Exception as e:
        app.logger.error(f"Seller earnings error: {str(e)}")
        return jsonify({'error': 'Failed to load earnings'}), 500


@app.route('/api/payments/history', methods=['GET'])
@login_required
def payment_history():
    try:
        user = current_user()
        if user.role == 'freelancer':
            query = Order.query.filter_by(seller_id=user.id)
        else:
            query = Order.query.filter_by(buyer_id=user.id)

        status = request.args.get('status')
        if status:
            query = query.filter_by(payment_status=status)
        else:
            query = query.filter(Order.payment_status != 'pending')

        page = parse_positive_int(request.args.get('page'), 1)
        limit = parse_positive_int(request.args.get('limit'), 20, maximum=100)
        total = query.count()
        orders = query.order_by(Order.updated_at.desc()).offset((page - 1) * limit).limit(limit).all()

        payments = []
        for order in orders:
            payments.append({
                'order_id': order.id,
                'gig_title': order.gig_title,
                'amount': order.amount,
                'service_fee': order.service_fee,
                'total_amount': order.total_amount,
                'net_amount': seller_net_amount(order.amount),
                'payment_status': order.payment_status,
                'payment_method': order.payment_method,
                'status': order.status,
                'date': isoformat(order.updated_at)
            })

        return jsonify({
            'payments': payments,
            'total_pages': (total + limit - 1) // limit,
            'current_page': page,
            'total': total
        })
    except Exception as e:
        app.logger.error(f"Payment history error: {str(e)}")
        return jsonify({'error': 'Failed to load payment history'}), 500


@app.route('/api/payments/notifications', methods=['GET'])
@login_required
def payment_notifications():
    try:
        user = current_user()
        since = datetime.utcnow() - timedelta(hours=24)
        is_seller = user.role == 'freelancer'

        query = Order.query.filter(
            Order.payment_status.in_(['paid', 'released']),
            Order.updated_at >= since
        )
        query = query.filter(Order.seller_id == user.id) if is_seller else query.filter(Order.buyer_id == user.id)

        notifications = []
        for order in query.order_by(Order.updated_at.desc()).all():
            if is_seller and order.payment_status == 'released':
                message = f"${seller_net_amount(order.amount):.2f} released to you for \"{order.gig_title}\""
            elif is_seller:
                message = f"Payment of ${order.total_amount:.2f} received in escrow for \"{order.gig_title}\""
            elif order.payment_status == 'released':
                message = f"Your payment for \"{order.gig_title}\" was released to the seller"
            else:
                message = f"Your payment of ${order.total_amount:.2f} for \"{order.gig_title}\" is held in escrow"
            notifications.append({
                'order_id': order.id,
                'payment_status': order.payment_status,
                'message': message,
                'timestamp': isoformat(order.updated_at)
            })

        return jsonify({'notifications': notifications})
    except Exception as e:
        app.logger.error(f"Payment notifications error: {str(e)}")
        return jsonify({'error': 'Failed to load payment notifications'}), 500


@app.route('/api/payments/withdraw', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=10)
def process_withdrawal():
    try:
        seller_id = session['user_id']
        data = request.get_json(silent=True) or {}
        try:
            amount = round(float(data.get('amount')), 2)
        except (TypeError, ValueError):
            return jsonify({'error': 'Invalid withdrawal amount'}), 400
        if amount <= 0:
            return jsonify({'error': 'Invalid withdrawal amount'}), 400

        balance = available_balance(seller_id)
        if amount > balance:
            return jsonify({'error': 'Insufficient balance', 'available_balance': balance}), 400

        withdrawal = Withdrawal(
            seller_id=seller_id,
            amount=amount,
            method=sanitize_input(data.get('method', 'bank_transfer'), max_length=50),
            status='completed',
            processed_at=datetime.utcnow()
        )
        db.session.add(withdrawal)
        db.session.commit()

        security_logger.log_financial('withdrawal', f'Withdrawal of ${amount:.2f}', amount, 'withdrawal', withdrawal.id)
        return jsonify({
            'message': 'Withdrawal processed',
            'withdrawal': withdrawal.to_dict(),
            'available_balance': round(balance - amount, 2)
        })
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Withdrawal error: {str(e)}")
        return jsonify({'error': 'Failed to process withdrawal'}), 500


@app.route('/api/payments/dispute/<int:order_id>', methods=['POST'])
@login_required
def create_dispute(order_id):
    try:
        user_id = session['user_id']
        order, error = load_order_for_party(order_id, user_id)
        if error:
            return error
        if order.dispute_status:
            return jsonify({'error': 'A dispute already exists for this order'}), 400

        data = request.get_json(silent=True) or {}
        reason = sanitize_input(data.get('reason', ''), max_length=200)
        if not reason:
            return jsonify({'error': 'Dispute reason is required'}), 400

        order.dispute_status = 'open'
        order.dispute_reason = reason
        order.dispute_description = sanitize_input(data.get('description', ''), max_length=5000)
        order.disputed_by = user_id
        order.disputed_at = datetime.utcnow()
        add_status_history(order, 'disputed', f'Dispute opened by {order.party_role(user_id)}: {reason}')
        db.session.commit()

        security_logger.log_event(
            event_category='financial',
            event_type='dispute_opened',
            action=f'Dispute opened on order {order.id}',
            severity='high',
            resource_type='order',
            resource_id=order.id,
            details={'reason': reason}
        )
        send_system_message(order, f"A dispute has been opened: {reason}. Escrow is on hold until it is resolved.")
        other_id = order.seller_id if user_id == order.buyer_id else order.buyer_id
        create_notification(
            other_id,
            'Dispute Opened',
            f"A dispute was opened on \"{order.gig_title}\": {reason}",
            'system',
            order_id=order.id,
            from_user_id=user_id,
            action_url=f'/orders/{order.id}'
        )
        emit_to_order(order.id, 'order_disputed', order_status_payload(order, 'order_disputed'))

        return jsonify({'message': 'Dispute submitted', 'order': order.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create dispute error: {str(e)}")
        return jsonify({'error': 'Failed to create dispute'}), 500


@app.route('/api/payments/stats', methods=['GET'])
@admin_required
def platform_stats():
    try:
        total_orders = Order.query.count()
        completed_orders = Order.query.filter_by(status='completed').count()
        paid_orders = Order.query.filter(Order.payment_status.in_(['paid', 'released'])).all()
        released_orders = [o for o in paid_orders if o.payment_status == 'released']

        return jsonify({
            'total_orders': total_orders,
            'completed_orders': completed_orders,
            'total_revenue': round(sum(o.total_amount for o in paid_orders), 2),
            'platform_fees': round(sum(o.amount * PLATFORM_FEE_PERCENT + (o.service_fee or 0) for o in released_orders), 2),
            'funds_in_escrow': round(sum(o.total_amount for o in paid_orders if o.payment_status == 'paid'), 2),
            'completion_rate': round(completed_orders / total_orders * 100, 1) if total_orders else 0
        })
    except Exception as e:
        app.logger.error(f"Platform stats error: {str(e)}")
        return jsonify({'error': 'Failed to load platform stats'}), 500


# Payout method routes
@app.route('/api/payments/methods', methods=['GET'])
@login_required
def list_payment_methods():
    try:
        methods = PaymentMethod.query.filter_by(user_id=session['user_id'], status='active').order_by(
            PaymentMethod.is_primary.desc(), PaymentMethod.created_at.asc()).all()
        return jsonify({'payment_methods': [m.to_dict() for m in methods]})
    except Exception as e:
        app.logger.error(f"List payment methods error: {str(e)}")
        return jsonify({'error': 'Failed to load payment methods'}), 500


def validate_payment_method(method_type, data):
    if method_type == 'bank':
        for field in ['account_name', 'account_number', 'routing_number', 'bank_name']:
            if not data.get(field):
                return 'Account name, account number, routing number and bank name are required for bank accounts'
    elif method_type == 'paypal':
        if not data.get('email'):
            return 'Email is required for PayPal'
        try:
            validate_email(data['email'], check_deliverability=False)
        except EmailNotValidError:
            return 'Invalid PayPal email'
    else:
        return 'Payment method type must be bank or paypal'
    return None


def make_primary(method):
    PaymentMethod.query.filter(
        PaymentMethod.user_id == method.user_id,
        PaymentMethod.id != method.id
    ).update({'is_primary': False}, synchronize_session=False)
    method.is_primary = True


@app.route('/api/payments/methods', methods=['POST'])
@login_required
def add_payment_method():
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}
        method_type = data.get('type')

        error = validate_payment_method(method_type, data)
        if error:
            return jsonify({'error': error}), 400

        method = PaymentMethod(user_id=user_id, type=method_type, status='active')
        for field in ['account_name', 'account_number', 'routing_number', 'bank_name', 'email']:
            if data.get(field):
                setattr(method, field, sanitize_input(data[field], max_length=120))
        db.session.add(method)
        db.session.flush()

        has_active = PaymentMethod.query.filter(
            PaymentMethod.user_id == user_id,
            PaymentMethod.status == 'active',
            PaymentMethod.id != method.id
        ).count() > 0
        if data.get('is_primary') or not has_active:
            make_primary(method)

        db.session.commit()
        return jsonify({'message': 'Payment method added', 'payment_method': method.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Add payment method error: {str(e)}")
        return jsonify({'error': 'Failed to add payment method'}), 500


def load_own_payment_method(method_id):
    method = db.session.get(PaymentMethod, method_id)
    if not method or method.user_id != session['user_id'] or method.status == 'inactive':
        return None
    return method


@app.route('/api/payments/methods/<int:method_id>', methods=['PUT'])
@login_required
def update_payment_method(method_id):
    try:
        method = load_own_payment_method(method_id)
        if not method:
            return jsonify({'error': 'Payment method not found'}), 404

        data = request.get_json(silent=True) or {}
        merged = {field: data.get(field, getattr(method, field))
                  for field in ['account_name', 'account_number', 'routing_number', 'bank_name', 'email']}
        error = validate_payment_method(method.type, merged)
        if error:
            return jsonify({'error': error}), 400

        for field, value in merged.items():
            setattr(method, field, sanitize_input(value, max_length=120) if value else value)
        if data.get('is_primary'):
            make_primary(method)

        db.session.commit()
        return jsonify({'message': 'Payment method updated', 'payment_method': method.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update payment method error: {str(e)}")
        return jsonify({'error': 'Failed to update payment method'}), 500


@app.route('/api/payments/methods/<int:method_id>', methods=['DELETE'])
@login_required
def delete_payment_method(method_id):
    try:
        method = load_own_payment_method(method_id)
        if not method:
            return jsonify({'error': 'Payment method not found'}), 404

        if method.is_primary:
            others = PaymentMethod.query.filter(
                PaymentMethod.user_id == method.user_id,
                PaymentMethod.status == 'active',
                PaymentMethod.id != method.id
            ).count()
            if others:
                return jsonify({'error': 'Set another payment method as primary before deleting this one'}), 400

        db.session.delete(method)
        db.session.commit()
        return jsonify({'message': 'Payment method deleted'})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete payment method error: {str(e)}")
        return jsonify({'error': 'Failed to delete payment method'}), 500


@app.route('/api/payments/methods/<int:method_id>/primary', methods=['PUT'])
@login_required
def set_primary_payment_method(method_id):
    try:
        method = load_own_payment_method(method_id)
        if not method:
            return jsonify({'error': 'Payment method not found'}), 404

        make_primary(method)
        db.session.commit()
        return jsonify({'message': 'Primary payment method updated', 'payment_method': method.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Set primary payment method error: {str(e)}")
        return jsonify({'error': 'Failed to update primary payment method'}), 500


# Chat routes
MESSAGE_TYPES = {'text', 'file', 'image', 'system', 'order_update'}


def load_conversation_for_participant(conversation_id, user_id):
    """Fetch a conversation the user belongs to; returns (conversation, membership, error_response)"""
    conversation = db.session.get(Conversation, conversation_id)
    if not conversation:
        return None, None, (jsonify({'error': 'Conversation not found'}), 404)
    membership = get_participant(conversation.id, user_id)
    if not membership:
        return None, None, (jsonify({'error': 'You are not a participant in this conversation'}), 403)
    return conversation, membership, None


def mark_messages_read(conversation, membership, user_id):
    now = datetime.utcnow().isoformat()
    unread = Message.query.filter(
        Message.conversation_id == conversation.id,
        Message.sender_id != user_id,
        Message.is_deleted.is_(False)
    ).all()
    for message in unread:
        read_by = load_json(message.read_by, [])
        if not any(entry.get('user_id') == user_id for entry in read_by):
            read_by.append({'user_id': user_id, 'read_at': now})
            message.read_by = json.dumps(read_by)
            message.status = 'read'
    membership.unread_count = 0


@app.route('/api/chat/conversations', methods=['GET'])
@login_required
def get_conversations():
    try:
        user_id = session['user_id']
        mine = conversation_ids_for(user_id)
        conversations = Conversation.query.filter(
            Conversation.id.in_(mine),
            Conversation.status != 'archived'
        ).order_by(Conversation.last_message_at.desc()).all()
        return jsonify({'conversations': [c.to_dict(for_user_id=user_id) for c in conversations]})
    except Exception as e:
        app.logger.error(f"Get conversations error: {str(e)}")
        return jsonify({'error': 'Failed to load conversations'}), 500


@app.route('/api/chat/conversations', methods=['POST'])
@login_required
def get_or_create_conversation():
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}
        participant_id = data.get('participant_id')
        order_id = data.get('order_id')
        gig_id = data.get('gig_id')
        conversation_type = data.get('type', 'general')
        if conversation_type not in ['order', 'inquiry', 'general', 'direct']:
            conversation_type = 'general'

        if order_id:
            order, error = load_order_for_party(order_id, user_id)
            if error:
                return error
            conversation = get_or_create_order_conversation(order)
            db.session.commit()
            return jsonify({'conversation': conversation.to_dict(for_user_id=user_id)})

        gig = None
        if gig_id:
            gig = db.session.get(Gig, gig_id)
            if not gig:
                return jsonify({'error': 'Gig not found'}), 404
            if not participant_id:
                participant_id = gig.seller_id
                conversation_type = 'inquiry'

        if not participant_id:
            return jsonify({'error': 'Participant is required'}), 400
        try:
            participant_id = int(participant_id)
        except (TypeError, ValueError):
            return jsonify({'error': 'Invalid participant'}), 400
        if participant_id == user_id:
            return jsonify({'error': 'You cannot start a conversation with yourself'}), 400
        if not db.session.get(User, participant_id):
            return jsonify({'error': 'User not found'}), 404

        conversation = find_pair_conversation(user_id, participant_id, gig_id=gig.id if gig else None)
        created = conversation is None
        if created:
            conversation = create_conversation(
                [user_id, participant_id],
                conversation_type=conversation_type,
                gig_id=gig.id if gig else None,
                title=f"Inquiry: {gig.title}" if gig else None
            )
            db.session.commit()
            emit_to_user(participant_id, 'conversation_updated', conversation.to_dict(for_user_id=participant_id))

        return jsonify({'conversation': conversation.to_dict(for_user_id=user_id)}), 201 if created else 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Get or create conversation error: {str(e)}")
        return jsonify({'error': 'Failed to open conversation'}), 500


@app.route('/api/chat/conversations/direct', methods=['POST'])
@login_required
def create_direct_conversation():
    try:
        user_id = session['user_id']
        data = request.get_json(silent=True) or {}
        try:
            participant_id = int(data.get('participant_id'))
        except (TypeError, ValueError):
            return jsonify({'error': 'Participant is required'}), 400
        if participant_id == user_id:
            return jsonify({'error': 'You cannot start a conversation with yourself'}), 400
        if not db.session.get(User, participant_id):
            return jsonify({'error': 'User not found'}), 404

        conversation = find_pair_conversation(user_id, participant_id)
        created = conversation is None
        if created:
            conversation = create_conversation([user_id, participant_id], conversation_type='direct')
            db.session.commit()
            emit_to_user(participant_id, 'conversation_updated', conversation.to_dict(for_user_id=participant_id))

        return jsonify({'conversation': conversation.to_dict(for_user_id=user_id)}), 201 if created else 200
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Direct conversation error: {str(e)}")
        return jsonify({'error': 'Failed to open conversation'}), 500


@app.route('/api/chat/conversations/search', methods=['GET'])
@login_required
def search_conversations():
    try:
        user_id = session['user_id']
        query_text = sanitize_input(request.args.get('q', ''), max_length=100)
        if not query_text:
            return jsonify({'error': 'Search query is required'}), 400

        pattern = f'%{query_text}%'
        mine = conversation_ids_for(user_id)
        conversations = Conversation.query.filter(
            Conversation.id.in_(mine),
            or_(Conversation.title.ilike(pattern), Conversation.last_message_content.ilike(pattern))
        ).order_by(Conversation.last_message_at.desc()).all()
        return jsonify({'conversations': [c.to_dict(for_user_id=user_id) for c in conversations]})
    except Exception as e:
        app.logger.error(f"Search conversations error: {str(e)}")
        return jsonify({'error': 'Failed to search conversations'}), 500


@app.route('/api/chat/conversations/<int:conversation_id>/messages', methods=['GET'])
@login_required
def get_messages(conversation_id):
    try:
        user_id = session['user_id']
        conversation, membership, error = load_conversation_for_participant(conversation_id, user_id)
        if error:
            return error

        page = parse_positive_int(request.args.get('page'), 1)
        limit = parse_positive_int(request.args.get('limit'), 50, maximum=200)
        query = Message.query.filter_by(conversation_id=conversation.id, is_deleted=False)
        total = query.count()
        # Page 1 is the most recent slice, returned oldest first
        messages = query.order_by(Message.created_at.desc(), Message.id.desc()).offset(
            (page - 1) * limit).limit(limit).all()
        messages.reverse()

        mark_messages_read(conversation, membership, user_id)
        db.session.commit()

        return jsonify({
            'messages': [m.to_dict() for m in messages],
            'total_pages': (total + limit - 1) // limit,
            'current_page': page,
            'total': total
        })
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Get messages error: {str(e)}")
        return jsonify({'error': 'Failed to load messages'}), 500


@app.route('/api/chat/conversations/<int:conversation_id>/messages', methods=['POST'])
@login_required
@api_rate_limit(requests_per_minute=60)
def send_message(conversation_id):
    try:
        user_id = session['user_id']
        conversation, membership, error = load_conversation_for_participant(conversation_id, user_id)
        if error:
            return error
        if conversation.status == 'blocked':
            return jsonify({'error': 'This conversation is blocked'}), 403

        data = request.get_json(silent=True) or {}
        content = sanitize_input(data.get('content', ''), max_length=5000)
        if not content:
            return jsonify({'error': 'Message content is required'}), 400

        message_type = data.get('message_type', 'text')
        if message_type not in MESSAGE_TYPES or message_type == 'system':
            message_type = 'text'

        attachments = data.get('attachments') or []
        if not isinstance(attachments, list):
            return jsonify({'error': 'attachments must be a list'}), 400

        reply_to_id = data.get('reply_to')
        if reply_to_id:
            parent = db.session.get(Message, reply_to_id)
            if not parent or parent.conversation_id != conversation.id:
                return jsonify({'error': 'Reply target not found'}), 400

        if conversation.status == 'archived':
            conversation.status = 'active'
        message, recipient_ids = record_message(
            conversation, user_id, content,
            message_type=message_type,
            attachments=attachments,
            reply_to_id=reply_to_id
        )
        db.session.commit()

        broadcast_message(conversation, message, recipient_ids)
        sender = db.session.get(User, user_id)
        for recipient_id in recipient_ids:
            notify_message_received(recipient_id, sender, conversation.id, content)

        return jsonify({'message': message.to_dict()}), 201
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Send message error: {str(e)}")
        return jsonify({'error': 'Failed to send message'}), 500


@app.route('/api/chat/conversations/<int:conversation_id>/read', methods=['PUT'])
@login_required
def mark_conversation_read(conversation_id):
    try:
        user_id = session['user_id']
        conversation, membership, error = load_conversation_for_participant(conversation_id, user_id)
        if error:
            return error

        mark_messages_read(conversation, membership, user_id)
        db.session.commit()
        emit_to_conversation(conversation.id, 'messages_read', {
            'conversation_id': conversation.id,
            'user_id': user_id
        })
        return jsonify({'message': 'Conversation marked as read'})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Mark conversation read error: {str(e)}")
        return jsonify({'error': 'Failed to mark conversation as read'}), 500


@app.route('/api/chat/conversations/<int:conversation_id>/upload', methods=['POST'])
@login_required
def upload_chat_file(conversation_id):
    try:
        conversation, membership, error = load_conversation_for_participant(conversation_id, session['user_id'])
        if error:
            return error

        upload = request.files.get('file')
        if not upload or not upload.filename:
            return jsonify({'error': 'No file uploaded'}), 400
        if not allowed_file(upload.filename, FILE_EXTENSIONS):
            return jsonify({'error': 'File type not allowed'}), 400

        file_info = save_upload(upload, 'chat')
        file_info['message_type'] = 'image' if allowed_file(upload.filename, IMAGE_EXTENSIONS) else 'file'
        return jsonify({'file': file_info}), 201
    except Exception as e:
        app.logger.error(f"Chat upload error: {str(e)}")
        return jsonify({'error': 'Failed to upload file'}), 500


def load_own_message(message_id, user_id):
    message = db.session.get(Message, message_id)
    if not message or message.is_deleted:
        return None, (jsonify({'error': 'Message not found'}), 404)
    if message.sender_id != user_id:
        return None, (jsonify({'error': 'You can only modify your own messages'}), 403)
    return message, None


@app.route('/api/chat/messages/<int:message_id>', methods=['PUT'])
@login_required
def edit_message(message_id):
    try:
        message, error = load_own_message(message_id, session['user_id'])
        if error:
            return error
        if message.message_type != 'text':
            return jsonify({'error': 'Only text messages can be edited'}), 400

        data = request.get_json(silent=True) or {}
        content = sanitize_input(data.get('content', ''), max_length=5000)
        if not content:
            return jsonify({'error': 'Message content is required'}), 400

        history = load_json(message.edit_history, [])
        history.append({'content': message.content, 'edited_at': datetime.utcnow().isoformat()})
        message.edit_history = json.dumps(history)
        message.content = content
        message.is_edited = True
        db.session.commit()

        emit_to_conversation(message.conversation_id, 'message_edited', message.to_dict())
        return jsonify({'message': message.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Edit message error: {str(e)}")
        return jsonify({'error': 'Failed to edit message'}), 500


@app.route('/api/chat/messages/<int:message_id>', methods=['DELETE'])
@login_required
def delete_message(message_id):
    try:
        message, error = load_own_message(message_id, session['user_id'])
        if error:
            return error

        message.is_deleted = True
        message.deleted_at = datetime.utcnow()
        db.session.commit()

        emit_to_conversation(message.conversation_id, 'message_deleted', {
            'message_id': message.id,
            'conversation_id': message.conversation_id
        })
        return jsonify({'message': 'Message deleted'})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete message error: {str(e)}")
        return jsonify({'error': 'Failed to delete message'}), 500


@app.route('/api/chat/messages/<int:message_id>/reactions', methods=['POST'])
@login_required
def toggle_reaction(message_id):
    try:
        user_id = session['user_id']
        message = db.session.get(Message, message_id)
        if not message or message.is_deleted:
            return jsonify({'error': 'Message not found'}), 404
        if not get_participant(message.conversation_id, user_id):
            return jsonify({'error': 'You are not a participant in this conversation'}), 403

        data = request.get_json(silent=True) or {}
        emoji = sanitize_input(data.get('emoji', ''), max_length=20)
        if not emoji:
            return jsonify({'error': 'Emoji is required'}), 400

        reactions = load_json(message.reactions, [])
        existing = [r for r in reactions if r.get('user_id') == user_id and r.get('emoji') == emoji]
        if existing:
            reactions = [r for r in reactions if r not in existing]
        else:
            reactions.append({'user_id': user_id, 'emoji': emoji})
        message.reactions = json.dumps(reactions)
        db.session.commit()

        emit_to_conversation(message.conversation_id, 'message_reaction', {
            'message_id': message.id,
            'reactions': reactions
        })
        return jsonify({'reactions': reactions})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Toggle reaction error: {str(e)}")
        return jsonify({'error': 'Failed to update reaction'}), 500


@app.route('/api/chat/migrate-order-messages', methods=['POST'])
@admin_required
def migrate_order_messages():
    """Copy legacy order messages into order conversations; safe to re-run"""
    try:
        migrated = 0
        conversations = 0
        order_ids = [row[0] for row in db.session.query(OrderMessage.order_id).distinct().all()]
        for order_id in order_ids:
            order = db.session.get(Order, order_id)
            if not order:
                continue
            conversation = get_or_create_order_conversation(order)
            conversations += 1
            seen = {}
            for legacy in OrderMessage.query.filter_by(order_id=order.id).order_by(OrderMessage.timestamp.asc()).all():
                # Already-mirrored rows count against legacy rows with the same content
                mirrored = Message.query.filter_by(conversation_id=conversation.id, content=legacy.message)
                if legacy.is_system:
                    mirrored = mirrored.filter_by(message_type='system')
                    key = (None, legacy.message)
                else:
                    mirrored = mirrored.filter_by(sender_id=legacy.sender_id)
                    key = (legacy.sender_id, legacy.message)
                seen[key] = seen.get(key, 0) + 1
                if mirrored.count() >= seen[key]:
                    continue
                db.session.add(Message(
                    conversation_id=conversation.id,
                    sender_id=legacy.sender_id,
                    content=legacy.message,
                    message_type='system' if legacy.is_system else 'text',
                    read_by=json.dumps([]),
                    status='read',
                    created_at=legacy.timestamp
                ))
                if not conversation.last_message_at or legacy.timestamp >= conversation.last_message_at:
                    conversation.last_message_content = legacy.message
                    conversation.last_message_sender_id = legacy.sender_id
                    conversation.last_message_type = 'system' if legacy.is_system else 'text'
                    conversation.last_message_at = legacy.timestamp
                migrated += 1
        db.session.commit()

        app.logger.info(f"Migrated {migrated} order messages into {conversations} conversations")
        return jsonify({'migrated': migrated, 'conversations': conversations})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Migrate order messages error: {str(e)}")
        return jsonify({'error': 'Failed to migrate order messages'}), 500


# Notification routes
@app.route('/api/notifications', methods=['GET'])
@login_required
def get_notifications():
    try:
        user_id = session['user_id']
        page = parse_positive_int(request.args.get('page'), 1)
        limit = parse_positive_int(request.args.get('limit'), 20, maximum=100)
        unread_only = request.args.get('unread_only', 'false').lower() == 'true'

        query = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            query = query.filter_by(is_read=False)
        total = query.count()
        notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(
            (page - 1) * limit).limit(limit).all()

        return jsonify({
            'notifications': [n.to_dict() for n in notifications],
            'unread_count': Notification.query.filter_by(user_id=user_id, is_read=False).count(),
            'total_pages': (total + limit - 1) // limit,
            'current_page': page,
            'total': total
        })
    except Exception as e:
        app.logger.error(f"Get notifications error: {str(e)}")
        return jsonify({'error': 'Failed to load notifications'}), 500


@app.route('/api/notifications/<int:notification_id>/read', methods=['PUT'])
@login_required
def mark_notification_read(notification_id):
    try:
        notification = db.session.get(Notification, notification_id)
        if not notification or notification.user_id != session['user_id']:
            return jsonify({'error': 'Notification not found'}), 404

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.utcnow()
            db.session.commit()
        return jsonify({'message': 'Notification marked as read', 'notification': notification.to_dict()})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Mark notification read error: {str(e)}")
        return jsonify({'error': 'Failed to update notification'}), 500


@app.route('/api/notifications/read-all', methods=['PUT'])
@login_required
def mark_all_notifications_read():
    try:
        updated = Notification.query.filter_by(user_id=session['user_id'], is_read=False).update(
            {'is_read': True, 'read_at': datetime.utcnow()}, synchronize_session=False)
        db.session.commit()
        return jsonify({'message': 'All notifications marked as read', 'updated': updated})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Mark all notifications read error: {str(e)}")
        return jsonify({'error': 'Failed to update notifications'}), 500


@app.route('/api/notifications/<int:notification_id>', methods=['DELETE'])
@login_required
def delete_notification(notification_id):
    try:
        notification = db.session.get(Notification, notification_id)
        if not notification or notification.user_id != session['user_id']:
            return jsonify({'error': 'Notification not found'}), 404

        db.session.delete(notification)
        db.session.commit()
        return jsonify({'message': 'Notification deleted'})
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Delete notification error: {str(e)}")
        return jsonify({'error': 'Failed to delete notification'}), 500


# Socket.IO events
@socketio.on('connect')
def handle_connect(auth=None):
    user_id = session.get('user_id')
    if user_id:
        join_room(user_room(user_id))
        app.logger.info(f"Socket connected for user {user_id}")


@socketio.on('join_user_room')
def handle_join_user_room(user_id):
    user_id = coerce_room_id(user_id)
    if user_id and user_id == session.get('user_id'):
        join_room(user_room(user_id))


@socketio.on('join_order')
def handle_join_order(order_id):
    order_id = coerce_room_id(order_id)
    user_id = session.get('user_id')
    if not order_id or not user_id:
        return
    order = db.session.get(Order, order_id)
    if order and order.party_role(user_id):
        join_room(order_room(order_id))


@socketio.on('leave_order')
def handle_leave_order(order_id):
    order_id = coerce_room_id(order_id)
    if order_id:
        leave_room(order_room(order_id))


@socketio.on('join_conversation')
def handle_join_conversation(conversation_id):
    conversation_id = coerce_room_id(conversation_id)
    user_id = session.get('user_id')
    if conversation_id and user_id and get_participant(conversation_id, user_id):
        join_room(conversation_room(conversation_id))


@socketio.on('leave_conversation')
def handle_leave_conversation(conversation_id):
    conversation_id = coerce_room_id(conversation_id)
    if conversation_id:
        leave_room(conversation_room(conversation_id))


def typing_participant(data):
    """Resolve (conversation_id, user) for a typing event from a member of the conversation"""
    user_id = session.get('user_id')
    conversation_id = coerce_room_id((data or {}).get('conversation_id'))
    if not user_id or not conversation_id or not get_participant(conversation_id, user_id):
        return None, None
    return conversation_id, db.session.get(User, user_id)


@socketio.on('typing_start')
def handle_typing_start(data):
    conversation_id, user = typing_participant(data)
    if not user:
        return
    emit('user_typing', {
        'user_id': user.id,
        'user_name': user.name,
        'conversation_id': conversation_id
    }, to=conversation_room(conversation_id), include_self=False)


@socketio.on('typing_stop')
def handle_typing_stop(data):
    conversation_id, user = typing_participant(data)
    if not user:
        return
    emit('user_stopped_typing', {
        'user_id': user.id,
        'conversation_id': conversation_id
    }, to=conversation_room(conversation_id), include_self=False)


from google_auth import setup_google_oauth
setup_google_oauth(app, db, User)


# Background jobs
def run_auto_release():
    from scheduled_jobs import auto_release_payments
    return auto_release_payments(app, db, Order, release_order_funds, after_auto_release)


def run_notification_cleanup():
    from scheduled_jobs import cleanup_old_notifications
    return cleanup_old_notifications(app, db, Notification)


_scheduler = None


def start_background_jobs():
    global _scheduler
    if _scheduler is None:
        from scheduled_jobs import init_scheduler
        _scheduler = init_scheduler(app, db, Order, Notification, release_order_funds, after_auto_release)
    return _scheduler


# Database initialization
_db_initialized = False


def init_database():
    """Create tables on first import"""
    global _db_initialized
    if _db_initialized:
        return
    try:
        db.create_all()
        _db_initialized = True
    except Exception as e:
        app.logger.error(f"Database initialization error: {str(e)}")
        raise


with app.app_context():
    init_database()

if os.environ.get('ENABLE_SCHEDULER', 'false').lower() == 'true':
    start_background_jobs()

if __name__ == '__main__':
    start_background_jobs()
    port = int(os.environ.get('PORT', 5000))
    socketio.run(app, host='0.0.0.0', port=port,
                 debug=os.environ.get('FLASK_DEBUG', 'False') == 'True',
                 allow_unsafe_werkzeug=True)
