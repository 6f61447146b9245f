"""
End-to-end simulation of the check-in pipeline.

This script exercises:
1. Configuration loading and validation
2. Baseline building over a run of ordinary days
3. Anomaly detection and the one-message-per-day cooldown
4. The one-reply thread lifecycle
5. Per-user record commits (in memory)

Run with: uv run python simulate.py
"""

import asyncio
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.table import Table

from adapters.healthkit.domain import create_daily_snapshot, create_routine_history
from adapters.sms.console import ConsoleTransport
from ember.config import get_config, print_config_summary, validate_config
from ember.log import configure_logging
from ember.services.companion import CompanionService
from ember.services.state_repository import InMemoryRecordStore, StateRepository

console = Console()

PHONE = "+14155550100"


class SimulatedClock:
    """Clock the simulation moves forward by hand."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


async def run_simulation() -> None:
    config = get_config()
    configure_logging(config.logging)

    start = datetime(2025, 3, 3, 8, 0, tzinfo=UTC)  # a Monday
    clock = SimulatedClock(start)
    service = CompanionService(
        ConsoleTransport(config.transport.sender_name, console),
        config,
        repository=StateRepository(InMemoryRecordStore()),
        clock=clock,
    )

    await service.register_user(PHONE)

    table = Table(title="Simulated days")
    table.add_column("Day")
    table.add_column("Anomaly")
    table.add_column("Sent")
    table.add_column("Reply")

    # Two weeks of routine before the first day we evaluate
    for snapshot in create_routine_history(14, end=start):
        clock.now = snapshot.timestamp
        outcome = await service.handle_snapshot(PHONE, snapshot)
        table.add_row(snapshot.timestamp.date().isoformat(), "-", str(outcome.sent), "")

    # Day 1: a short night, synced twice, answered twice
    clock.now = start
    short_night = create_daily_snapshot(start, sleep_hours=4.5)
    first = await service.handle_snapshot(PHONE, short_night)
    second = await service.handle_snapshot(PHONE, short_night)
    reply = await service.handle_inbound_reply(PHONE, "yeah couldn't sleep")
    again = await service.handle_inbound_reply(PHONE, "still tired")
    anomaly = first.anomaly.type.value if first.anomaly else "-"
    table.add_row(start.date().isoformat(), anomaly, str(first.sent), str(reply.replied))
    table.add_row("(resync)", anomaly, str(second.sent), str(again.replied))

    # Day 2: a skipped run noticed in the afternoon
    clock.now = start + timedelta(days=1, hours=6)
    skipped = create_daily_snapshot(clock.now, running_minutes=0)
    outcome = await service.handle_snapshot(PHONE, skipped)
    table.add_row(
        clock.now.date().isoformat(),
        outcome.anomaly.type.value if outcome.anomaly else "-",
        str(outcome.sent),
        "",
    )

    console.print(table)

    state = await service.repository.load(PHONE)
    console.print(f"Window: {len(state.window)} snapshots, revision {state.revision}")
    for turn in state.conversation:
        console.print(f"  [{turn.role}] {turn.content}")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
    asyncio.run(run_simulation())
