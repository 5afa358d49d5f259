"""
Chaos Simulation Script

Drives many concurrent orders through the full pipeline over HTTP:
stage -> payment link -> gateway webhook -> status check.

A share of orders receive a failed payment, and a share receive the
"paid" webhook twice to exercise duplicate delivery. Requires the API in
development mode (mock gateway, unsigned webhooks).

Run from project root: python scripts/simulate.py

Version: 1.0.0
"""

import argparse
import asyncio
import random
import sys
import time
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 50

# Sample data for random orders
FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]
LAST_NAMES = ["Smith", "Johnson", "Williams", "Brown", "Jones", "Garcia", "Miller", "Davis", "Wilson", "Taylor"]
RESTAURANTS = [
    {"restaurant_id": "pizza-palace", "restaurant_name": "Pizza Palace"},
    {"restaurant_id": "pasta-house", "restaurant_name": "Pasta House"},
]
MENU_ITEMS = [
    {"name": "Pizza Margherita", "unit_price": 14.99},
    {"name": "Pepperoni Pizza", "unit_price": 16.99},
    {"name": "Caesar Salad", "unit_price": 8.99},
    {"name": "Garlic Bread", "unit_price": 5.99},
    {"name": "Pasta Carbonara", "unit_price": 13.99},
    {"name": "Tiramisu", "unit_price": 7.99},
    {"name": "Coke", "unit_price": 2.99},
    {"name": "Sparkling Water", "unit_price": 3.49},
]


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    items = []
    for _ in range(random.randint(1, 4)):
        item = random.choice(MENU_ITEMS).copy()
        item["quantity"] = random.randint(1, 3)
        items.append(item)
    return items


def generate_stage_payload() -> dict[str, Any]:
    """Generate payload for /api/orders/stage."""
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    return {
        "customer_name": f"{first} {last}",
        "customer_email": f"{first.lower()}.{last.lower()}@example.com",
        "customer_phone": f"555-{random.randint(100, 999)}-{random.randint(1000, 9999)}",
        **random.choice(RESTAURANTS),
        "items": generate_random_items(),
    }


def checkout_event(event_type: str, staging_id: str, link_id: str) -> dict[str, Any]:
    """Stripe-shaped webhook event for a payment link."""
    obj: dict[str, Any] = {
        "id": f"cs_mock_{random.randint(100000, 999999)}",
        "payment_link": link_id,
        "payment_intent": f"pi_mock_{random.randint(100000, 999999)}",
        "metadata": {"staging_id": staging_id},
    }
    if event_type == "payment_intent.payment_failed":
        obj["last_payment_error"] = {"message": "Your card was declined."}
    return {"type": event_type, "data": {"object": obj}}


async def run_order(client: httpx.AsyncClient, order_num: int) -> dict[str, Any]:
    """Stage one order and drive it to a payment outcome."""
    start_time = time.time()
    outcome = random.choices(["paid", "failed", "duplicate"], weights=[7, 2, 1])[0]

    try:
        response = await client.post(f"{API_BASE_URL}/api/orders/stage", json=generate_stage_payload())
        response.raise_for_status()
        staged = response.json()
        staging_id = staged["staging_id"]

        response = await client.post(f"{API_BASE_URL}/api/orders/{staging_id}/payment-link")
        response.raise_for_status()
        link_id = response.json()["id"]

        event_type = (
            "payment_intent.payment_failed" if outcome == "failed" else "checkout.session.completed"
        )
        deliveries = 2 if outcome == "duplicate" else 1
        for _ in range(deliveries):
            response = await client.post(
                f"{API_BASE_URL}/webhook/payments",
                json=checkout_event(event_type, staging_id, link_id),
            )
            response.raise_for_status()

        response = await client.get(f"{API_BASE_URL}/api/orders/{staging_id}/status")
        response.raise_for_status()
        status = response.json()

        return {
            "order_num": order_num,
            "success": True,
            "outcome": outcome,
            "staging_id": staging_id,
            "status": status["status"],
            "migrated": status["moved_to_permanent"],
            "total": staged["total"],
            "time": round(time.time() - start_time, 3),
        }
    except (httpx.HTTPError, KeyError) as e:
        return {
            "order_num": order_num,
            "success": False,
            "outcome": outcome,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS) -> dict[str, Any]:
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - STAGE / PAY / MIGRATE")
    print("=" * 70)
    print(f"📋 Total Orders: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(timeout=30.0) as client:
        results = await asyncio.gather(*[run_order(client, i + 1) for i in range(num_orders)])
    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]
    paid = [r for r in successful if r["status"] == "paid"]
    migrated = [r for r in paid if r["migrated"]]
    declined = [r for r in successful if r["status"] == "failed"]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Completed Flows: {len(successful)}/{num_orders}")
    print(f"❌ Broken Flows: {len(failed)}/{num_orders}")
    print(f"💳 Paid: {len(paid)} (migrated immediately: {len(migrated)})")
    print(f"🚫 Declined: {len(declined)}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print(f"\n📈 Average flow time: {avg_time}s")
        print(f"   💰 Paid Revenue: ${sum(r['total'] for r in paid):.2f}")

    if len(migrated) < len(paid):
        print(
            f"\n⏳ {len(paid) - len(migrated)} paid order(s) are waiting in the "
            f"migration queue; run scripts/inspect_dead_letters.py later to check."
        )

    if failed:
        print("\n⚠️  Broken Flow Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']} [{f['outcome']}]: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


async def preflight() -> bool:
    """Check the API is up before firing the simulation."""
    async with httpx.AsyncClient(timeout=10.0) as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ API unreachable: {e}")
            return False

    data = response.json()
    print(f"   ✅ Status: {data.get('status')}")
    print(f"   Database: {data.get('database')}")
    print(f"   Payment Gateway: {data.get('payment_gateway')}")
    return response.status_code == 200


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--skip-preflight", action="store_true", help="Skip the health check")
    args = parser.parse_args()

    if not args.skip_preflight and not asyncio.run(preflight()):
        print("\n❌ Pre-flight check failed. Start the API first.")
        sys.exit(1)

    asyncio.run(run_simulation(num_orders=args.orders))
