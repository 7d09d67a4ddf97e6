#!/usr/bin/env python3
"""
Seed a buyer, a seller, a gig and a paid order for local testing of the
delivery and escrow flow
"""
import sys

from werkzeug.security import generate_password_hash

from app import app, db, User, Gig, Order, calculate_order_pricing, add_status_history

SELLER_EMAIL = 'seller@example.com'
BUYER_EMAIL = 'buyer@example.com'
DEFAULT_PASSWORD = 'Password123!'


def get_or_create_user(email, name, role):
    user = User.query.filter_by(email=email).first()
    if user:
        print(f"Using existing {role}: {email}")
        return user
    user = User(
        name=name,
        email=email,
        password_hash=generate_password_hash(DEFAULT_PASSWORD),
        role=role
    )
    db.session.add(user)
    db.session.flush()
    print(f"Created {role}: {email} / {DEFAULT_PASSWORD}")
    return user


def create_test_order(status='active'):
    with app.app_context():
        try:
            seller = get_or_create_user(SELLER_EMAIL, 'Test Seller', 'freelancer')
            buyer = get_or_create_user(BUYER_EMAIL, 'Test Buyer', 'client')

            gig = Gig.query.filter_by(seller_id=seller.id).first()
            if not gig:
                gig = Gig(
                    title='I will design a modern logo',
                    description='Three concepts, unlimited tweaks within scope, source files included.',
                    category='design',
                    price=1750,
                    delivery_time=3,
                    seller_id=seller.id
                )
                db.session.add(gig)
                db.session.flush()
                print(f"Created gig #{gig.id}: {gig.title}")

            pricing = calculate_order_pricing(gig.price)
            order = Order(
                gig_id=gig.id,
                buyer_id=buyer.id,
                seller_id=seller.id,
                gig_title=gig.title,
                gig_image=gig.image,
                amount=pricing['amount'],
                service_fee=pricing['service_fee'],
                total_amount=pricing['total_amount'],
                delivery_time=gig.delivery_time,
                requirements='Minimal wordmark, dark and light variants',
                status=status,
                payment_status='paid' if status != 'pending' else 'pending',
                payment_method='card'
            )
            db.session.add(order)
            db.session.flush()
            add_status_history(order, 'pending', 'Order created and awaiting payment')
            if status != 'pending':
                add_status_history(order, status, 'Seeded by create_test_order.py')
            db.session.commit()

            print(f"\nOrder #{order.id} created")
            print(f"   Amount: ${order.amount:.2f} + ${order.service_fee:.2f} fee = ${order.total_amount:.2f}")
            print(f"   Status: {order.status} / payment {order.payment_status}")
            return True

        except Exception as e:
            print(f"Seeding failed: {e}")
            db.session.rollback()
            return False


if __name__ == '__main__':
    requested = sys.argv[1] if len(sys.argv) > 1 else 'active'
    if requested not in ['pending', 'active', 'delivered', 'revision']:
        print("Usage: python create_test_order.py [pending|active|delivered|revision]")
        sys.exit(1)
    success = create_test_order(requested)
    sys.exit(0 if success else 1)
