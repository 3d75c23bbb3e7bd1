#!/usr/bin/env python3
"""
Demo script for ChurnOpp.

Demonstrates the full pipeline in one process:
1. Seeding accounts on each tier
2. Simulating a browser session through the event detector
3. Delivery to the collector (including tier rejections)
4. Churn scoring and the bulk dashboard listing
"""

import asyncio
import logging
import sys
import tempfile
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx
import jwt

from churnopp import api
from churnopp.config import DeliveryConfig, Settings
from churnopp.delivery import DeliveryQueue, HttpTransport
from churnopp.detector import ClickTarget, EventDetector, detect_device_info
from churnopp.models import Account, SubscriptionTier


def print_header(text: str):
    print("\n" + "=" * 60)
    print(text)
    print("=" * 60)


def seed_accounts(services: api.Services):
    for tier in SubscriptionTier:
        services.db.save_account(Account(
            account_id=f"client_{tier.value}",
            email=f"owner+{tier.value}@example.com",
            tier=tier,
        ))


async def simulate_session(account_id: str, client: httpx.AsyncClient):
    """Drive one visitor session through the detector."""
    transport = HttpTransport("http://churnopp/api/events", client=client)
    queue = DeliveryQueue(transport, DeliveryConfig(collector_url=transport.collector_url))
    detector = EventDetector(
        account_id,
        queue,
        device_info=detect_device_info(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile",
            platform="iPhone",
            language="en-US",
        ),
    )

    detector.start()
    detector.identify("visitor@example.com")
    detector.handle_scroll(scroll_top=300, document_height=2000, viewport_height=800)
    detector.handle_scroll(scroll_top=200, document_height=2000, viewport_height=800)
    for _ in range(3):
        detector.handle_click(ClickTarget(tag="BUTTON", id="buy", classes=["btn", "add-to-cart"]))
    detector.handle_click(ClickTarget(tag="A", id="faq", classes=["help-center-link"]))
    detector.handle_pointer_leave(client_y=-5)
    detector.handle_visibility_change(hidden=True)
    detector.teardown()

    await queue.close()
    return detector.session.session_id


async def main():
    print_header("CHURNOPP DEMO")

    workdir = Path(tempfile.mkdtemp(prefix="churnopp-demo-"))
    settings = Settings(
        db_path=str(workdir / "churnopp.db"),
        log_dir=str(workdir / "logs"),
    )
    services = api.build_services(settings)
    api._services = services
    seed_accounts(services)

    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=api.app))
    try:
        for tier in SubscriptionTier:
            account_id = f"client_{tier.value}"
            print_header(f"SESSION FOR {account_id}")
            session_id = await simulate_session(account_id, client)

            token = jwt.encode({"accountId": account_id}, settings.jwt_secret, algorithm="HS256")
            headers = {"Authorization": f"Bearer {token}"}

            stats = (await client.get("http://churnopp/api/dashboard/stats", headers=headers)).json()
            print(f"Stored events: {stats['totalEvents']}  by type: {stats['eventCounts']}")

            score = (await client.get(
                f"http://churnopp/api/dashboard/churn-score/{session_id}", headers=headers
            )).json()
            print(f"Churn score for {session_id}: {score['churnScore']:.2f}")

            users = (await client.get("http://churnopp/api/dashboard/churn-users", headers=headers)).json()
            print(f"Dashboard listing: {users}")
    finally:
        await client.aclose()
        services.scorer.dispatcher.shutdown()

    print(f"\nActivity logs written to {settings.log_dir}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    asyncio.run(main())
