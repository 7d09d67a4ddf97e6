"""
Stripe Escrow Integration Module

Wraps the Stripe SDK calls used by the order escrow flow: buyer funds are
authorized with a manual-capture PaymentIntent, captured once the buyer
confirms, transferred to the seller's connected account on release, and
cancelled or refunded when the order is called off.

Configuration Required:
- STRIPE_SECRET_KEY: Your Stripe secret key
- STRIPE_CURRENCY: Charge currency (defaults to usd)
"""

import os
from typing import Dict, Optional, Any

import stripe

PLATFORM_FEE_PERCENT = 0.05


class StripeEscrowConfig:
    """Stripe configuration settings"""

    def __init__(self):
        self.secret_key = os.environ.get('STRIPE_SECRET_KEY', '')
        self.currency = os.environ.get('STRIPE_CURRENCY', 'usd').lower()

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


class StripeEscrowClient:
    """
    Thin client around the Stripe SDK for escrow payments

    Every method returns a dict with a 'success' flag instead of raising, so
    route handlers can turn processor failures into JSON responses.

    Usage:
        client = StripeEscrowClient()
        if client.is_available():
            result = client.create_payment_intent(
                amount_cents=2100,
                description="Payment for: Logo design",
                metadata={'orderId': '12'}
            )
    """

    def __init__(self):
        self.config = StripeEscrowConfig()
        if self.config.is_configured:
            stripe.api_key = self.config.secret_key

    def is_available(self) -> bool:
        """Check if Stripe is properly configured"""
        return self.config.is_configured

    def _not_configured(self) -> Dict[str, Any]:
        return {
            'success': False,
            'error': 'Stripe is not configured. Please set STRIPE_SECRET_KEY.',
            'error_code': 'NOT_CONFIGURED'
        }

    def _failure(self, error: Exception) -> Dict[str, Any]:
        return {
            'success': False,
            'error': getattr(error, 'user_message', None) or str(error),
            'error_code': getattr(error, 'code', None) or 'STRIPE_ERROR'
        }

    def create_payment_intent(
        self,
        amount_cents: int,
        description: str,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Authorize the buyer's payment without capturing it

        Args:
            amount_cents: Total charge in the smallest currency unit
            description: Statement description shown in the dashboard
            metadata: Order bookkeeping (order, buyer, seller, fee split)
            customer_id: Optional Stripe customer to attach

        Returns:
            Dict with payment_intent_id and client_secret, or error details
        """
        if not self.is_available():
            return self._not_configured()

        params = {
            'amount': int(amount_cents),
            'currency': self.config.currency,
            'automatic_payment_methods': {'enabled': True},
            'metadata': metadata,
            'description': description,
            'capture_method': 'manual'
        }
        if customer_id:
            params['customer'] = customer_id

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            return self._failure(e)

        return {
            'success': True,
            'payment_intent_id': intent.id,
            'client_secret': intent.client_secret,
            'status': intent.status
        }

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """Fetch the current state and metadata of a PaymentIntent"""
        if not self.is_available():
            return self._not_configured()

        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            return self._failure(e)

        return {
            'success': True,
            'payment_intent_id': intent.id,
            'status': intent.status,
            'amount': intent.amount,
            'metadata': dict(intent.metadata or {})
        }

    def capture_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """Capture previously authorized funds into the platform balance"""
        if not self.is_available():
            return self._not_configured()

        try:
            intent = stripe.PaymentIntent.capture(payment_intent_id)
        except stripe.StripeError as e:
            return self._failure(e)

        return {
            'success': True,
            'payment_intent_id': intent.id,
            'status': intent.status,
            'charge_id': getattr(intent, 'latest_charge', None)
        }

    def cancel_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """Void an uncaptured authorization"""
        if not self.is_available():
            return self._not_configured()

        try:
            intent = stripe.PaymentIntent.cancel(payment_intent_id)
        except stripe.StripeError as e:
            return self._failure(e)

        return {'success': True, 'payment_intent_id': intent.id, 'status': intent.status}

    def create_transfer(
        self,
        amount_cents: int,
        destination: str,
        description: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """Move the seller's share to their connected account"""
        if not self.is_available():
            return self._not_configured()

        try:
            transfer = stripe.Transfer.create(
                amount=int(amount_cents),
                currency=self.config.currency,
                destination=destination,
                description=description,
                metadata=metadata or {}
            )
        except stripe.StripeError as e:
            return self._failure(e)

        return {'success': True, 'transfer_id': transfer.id}

    def create_refund(self, payment_intent_id: str, metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Refund a captured PaymentIntent in full"""
        if not self.is_available():
            return self._not_configured()

        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                reason='requested_by_customer',
                metadata=metadata or {}
            )
        except stripe.StripeError as e:
            return self._failure(e)

        return {'success': True, 'refund_id': refund.id, 'status': refund.status}


def get_stripe_client() -> StripeEscrowClient:
    """Get Stripe escrow client instance"""
    return StripeEscrowClient()


def split_order_amount(amount: float) -> Dict[str, int]:
    """
    Split an order amount into platform fee and seller share, in cents

    The platform keeps 5% of the order amount; the buyer's service fee is
    charged on top of the amount and is not part of this split.
    """
    amount_cents = int(round(amount * 100))
    platform_fee = int(round(amount * PLATFORM_FEE_PERCENT * 100))
    return {
        'platform_fee': platform_fee,
        'seller_amount': amount_cents - platform_fee
    }
