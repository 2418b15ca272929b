"""
Contention Simulation Script

Seeds ready orders, then has many couriers race to accept each one at the
same moment. Every order must end up with exactly one winner.

Requires the API running in development mode (for the seeding endpoint).
Run from project root: python scripts/simulate.py

Version: 1.0.0
"""

import asyncio
import sys
import random
import time
import argparse
from collections import Counter
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 20
COURIERS_PER_ORDER = 10

STREETS = ["Main St", "Broadway", "5th Avenue", "Park Ave", "Madison Ave", "Lexington Ave", "Amsterdam Ave"]


def generate_seed_payload(order_num: int) -> dict[str, Any]:
    """Generate a ready order for /api/dev/orders."""
    return {
        "order_number": f"SIM-{order_num:04d}",
        "restaurant_id": f"restaurant-{random.randint(1, 5)}",
        "customer_id": f"customer-{random.randint(1, 500)}",
        "delivery_address": f"{random.randint(1, 999)} {random.choice(STREETS)}",
        "total_amount": round(random.uniform(8, 80), 2),
        "status": "ready",
    }


async def seed_orders(client: httpx.AsyncClient, num_orders: int) -> list[str]:
    """Create the orders couriers will fight over."""
    order_ids = []
    for i in range(num_orders):
        response = await client.post(
            f"{API_BASE_URL}/api/dev/orders",
            json=generate_seed_payload(i + 1),
            timeout=30.0
        )
        response.raise_for_status()
        order_ids.append(response.json()["id"])
    return order_ids


async def send_accept(
    client: httpx.AsyncClient,
    order_id: str,
    courier_id: str
) -> dict[str, Any]:
    """One courier's accept request."""
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders/{order_id}/accept",
            json={"courier_id": courier_id},
            timeout=30.0
        )
        elapsed = round(time.time() - start_time, 3)
        data = response.json()
        return {
            "order_id": order_id,
            "courier_id": courier_id,
            "status_code": response.status_code,
            "success": data.get("success", False),
            "code": data.get("code"),
            "time": elapsed,
        }
    except httpx.HTTPError as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "order_id": order_id,
            "courier_id": courier_id,
            "status_code": None,
            "success": False,
            "code": "TRANSPORT",
            "error": str(e)[:100],
            "time": elapsed,
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(
    num_orders: int = TOTAL_ORDERS,
    couriers_per_order: int = COURIERS_PER_ORDER
) -> bool:
    """
    Run the contention simulation.

    Args:
        num_orders: Number of orders to seed
        couriers_per_order: Couriers racing for each order

    Returns:
        True if every order was won exactly once
    """
    print("=" * 70)
    print("🔥 CONTENTION SIMULATION - FIRST COURIER WINS")
    print("=" * 70)
    print(f"📋 Orders: {num_orders}")
    print(f"🛵 Couriers per order: {couriers_per_order}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        print("\n🌱 Seeding orders...")
        order_ids = await seed_orders(client, num_orders)
        print(f"   ✅ {len(order_ids)} ready orders")

        print("\n🚀 Firing concurrent accepts...\n")
        start_time = time.time()
        tasks = [
            send_accept(client, order_id, f"courier-{c + 1}")
            for order_id in order_ids
            for c in range(couriers_per_order)
        ]
        random.shuffle(tasks)
        results = await asyncio.gather(*tasks)
        total_time = round(time.time() - start_time, 2)

    winners = Counter(r["order_id"] for r in results if r["success"])
    codes = Counter(r["code"] for r in results if not r["success"])
    double_wins = [order_id for order_id, count in winners.items() if count > 1]
    unclaimed = [order_id for order_id in order_ids if order_id not in winners]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Orders won: {len(winners)}/{num_orders}")
    print(f"📨 Accept requests: {len(results)}")
    print(f"⏱️  Total Time: {total_time}s")

    if codes:
        print("\n❌ Rejections by code:")
        for code, count in codes.most_common():
            print(f"   {code}: {count}")

    times = [r["time"] for r in results]
    print("\n📈 Performance Metrics:")
    print(f"   Average Response: {round(sum(times) / len(times), 3)}s")
    print(f"   Fastest: {min(times)}s")
    print(f"   Slowest: {max(times)}s")

    if unclaimed:
        print(f"\n⚠️  {len(unclaimed)} orders left unclaimed (transport failures only)")

    print("\n" + "=" * 70)
    if double_wins:
        print(f"❌ {len(double_wins)} ORDERS WON MORE THAN ONCE: {double_wins[:5]}")
    else:
        print("✅ No order was won more than once")
    print("🔍 Next: python scripts/verify.py (SQL store + Celery audit)")
    print("=" * 70)

    return not double_wins


async def preflight() -> bool:
    """Make sure the API is up before the race."""
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"❌ API unreachable: {e}")
            return False
        if response.status_code != 200:
            print(f"❌ Health check failed: {response.text}")
            return False
        data = response.json()
        print(f"✅ {data.get('status')} ({data.get('store')}, {data.get('environment')})")
        return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Contention Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--couriers", type=int, default=COURIERS_PER_ORDER, help="Couriers per order")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    args = parser.parse_args()

    API_BASE_URL = args.url

    if not asyncio.run(preflight()):
        sys.exit(1)

    ok = asyncio.run(run_simulation(num_orders=args.orders, couriers_per_order=args.couriers))
    sys.exit(0 if ok else 1)
