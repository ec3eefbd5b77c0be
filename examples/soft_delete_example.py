#!/usr/bin/env python3
"""
Soft Delete Example - softpurge

Demonstrates the soft delete lifecycle and the purge pipeline:
- Deleted records hidden from ordinary reads
- Restore within the retention window
- Hard removal once the retention window has elapsed
- Trash listing and deletion reports

The example drives the worker by hand and moves a simulated clock forward,
so the 30 day retention window passes instantly.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from softpurge import PurgeConfig, PurgeRuntime
from softpurge.soft_delete import QueryOptions


class SimulatedClock:
    """Clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int) -> None:
        self.now += timedelta(days=days)


async def main() -> None:
    clock = SimulatedClock()
    config = PurgeConfig(
        environment="development",
        job_store_url="sqlite://",
        retention_days=30,
    )

    async with PurgeRuntime(config, clock=clock) as runtime:
        customers = runtime.register("customers")
        await runtime.start(run_worker=False)

        print("=== Soft Delete Example ===\n")

        acme = await customers.insert_one({"name": "Acme Corp", "tier": "gold"})
        globex = await customers.insert_one({"name": "Globex", "tier": "silver"})
        initech = await customers.insert_one({"name": "Initech", "tier": "silver"})
        print(f"Created 3 customers, {await customers.count()} visible")

        # 1. Soft delete
        print("\n1. Soft deleting Globex and Initech...")
        await customers.soft_delete(globex)
        await customers.soft_delete(initech)
        print(f"   Visible customers: {await customers.count()}")
        print(f"   Queue: {await runtime.queue.counts()}")

        # 2. Restore within retention
        print("\n2. Restoring Initech after 10 days...")
        clock.advance(10)
        await customers.restore(initech)
        restored = await customers.find_by_id(initech)
        print(f"   Initech visible again: {restored is not None}")
        print(f"   Queue: {await runtime.queue.counts()}")

        # 3. Trash and reports
        print("\n3. Trash contents:")
        retention = runtime.service.retention
        for entity in await runtime.service.get_deleted_entities("customers"):
            purge_due = entity["deletedAt"] + retention
            print(
                f"   - {entity['name']} deleted at {entity['deletedAt']:%Y-%m-%d}, "
                f"purge due {purge_due:%Y-%m-%d}"
            )

        report = await runtime.service.generate_deletion_report()
        for entity_type, stats in report.by_type.items():
            print(
                f"   {entity_type}: {stats.active} active, {stats.deleted} deleted, "
                f"{stats.overdue} overdue"
            )

        # 4. Purge after retention
        print("\n4. Advancing past the retention window and running the worker...")
        clock.advance(21)
        processed = await runtime.worker.run_until_idle()
        print(f"   Processed {processed} task(s)")

        purged = await customers.find_by_id(globex, QueryOptions.with_deleted())
        print(f"   Globex purged: {purged is None}")
        print(f"   Remaining customers: {await customers.count()}")
        print(f"   Acme still present: {await customers.find_by_id(acme) is not None}")

        print("\n=== Example completed ===")


if __name__ == "__main__":
    asyncio.run(main())
