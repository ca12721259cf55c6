#!/usr/bin/env python3
"""
Provision a paid order that never got a CRM account.

Marks the order completed, creates the account for its customer and stores
the account reference on the customer.

Usage:
    python process_stuck_order.py --checkout-id 292b4ced-526a-44d1-89fd-a0ed74e19d34
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from provisioner.core.logging import setup_logging
from provisioner.db.session import SessionLocal
from provisioner.models.order import OrderStatus
from provisioner.services.order_service import find_order_by_checkout_id, transition_order
from provisioner.services.webhook_handlers import provision_order


def process_stuck_order(checkout_id: str) -> bool:
    db = SessionLocal()
    try:
        order = find_order_by_checkout_id(checkout_id, db)
        if not order:
            print(f"❌ Order not found for checkout: {checkout_id}")
            return False

        customer = order.customer
        print("\n=== PROCESSING STUCK ORDER ===")
        print(f"Order ID: {order.id}")
        print(f"Status: {order.status.value}")
        print(f"Polar Checkout ID: {order.polar_checkout_id}")
        print(f"Subscription ID: {order.polar_subscription_id}")
        print(f"Customer: {customer.full_name} ({customer.email})")
        print(f"Business: {customer.business_name or 'N/A'}")

        transition_order(order, OrderStatus.COMPLETED)
        db.commit()
        print("\n✅ Order updated to COMPLETED")

        print("\nCreating CRM account...")
        provisioning = provision_order(db, order)
        print(f"CRM Response: {provisioning}")

        if provisioning.get("success"):
            print("✅ Customer updated with CRM account ids")
            return True
        print(f"❌ CRM account not created: {provisioning.get('message')}")
        return False

    except Exception as e:
        print(f"❌ Error: {e}")
        import traceback
        traceback.print_exc()
        db.rollback()
        return False
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Provision a paid order that never got a CRM account")
    parser.add_argument("--checkout-id", required=True, help="Polar checkout id of the stuck order")
    args = parser.parse_args()

    setup_logging()
    success = process_stuck_order(args.checkout_id)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
