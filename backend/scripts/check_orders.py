#!/usr/bin/env python3
"""
Print recent orders and webhook ledger entries, to spot stuck or failed events.

Usage:
    python check_orders.py
    python check_orders.py --orders 20 --webhooks 50
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from provisioner.db.session import SessionLocal
from provisioner.services.event_store import list_events
from provisioner.services.order_service import list_orders


def print_orders(db, limit: int):
    orders = list_orders(db, limit=limit)
    print(f"\n=== RECENT ORDERS ({len(orders)}) ===")
    for order in orders:
        customer = order.customer
        print(f"\nOrder ID: {order.id}")
        print(f"  Status: {order.status.value}")
        print(f"  Customer: {customer.full_name} ({customer.email})")
        print(f"  Polar Checkout ID: {order.polar_checkout_id}")
        print(f"  Subscription ID: {order.polar_subscription_id}")
        print(f"  Amount: {order.amount} {order.currency}")
        print(f"  CRM Account: {order.crm_account_id or 'N/A'} / {order.crm_location_id or 'N/A'}")
        print(f"  Created: {order.created_at}")


def print_webhooks(db, limit: int):
    events = list_events(db, limit=limit)
    print(f"\n=== RECENT WEBHOOKS ({len(events)}) ===")
    for event in events:
        marker = "❌" if event.error_message else "✅"
        print(f"\n{marker} {event.event_type} [{event.status.value}] {event.event_id}")
        print(f"  Created: {event.created_at}")
        if event.error_message:
            print(f"  Error: {event.error_message}")


def main():
    parser = argparse.ArgumentParser(description="Show recent orders and webhook events")
    parser.add_argument("--orders", type=int, default=5, help="Number of orders to show")
    parser.add_argument("--webhooks", type=int, default=10, help="Number of webhook events to show")
    args = parser.parse_args()

    db = SessionLocal()
    try:
        print_orders(db, args.orders)
        print_webhooks(db, args.webhooks)
    finally:
        db.close()


if __name__ == "__main__":
    main()
