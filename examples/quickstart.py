"""Quickstart examples for aumai-storetx.

Demonstrates all-or-nothing writes across object storage and a document store:
  1. Signup that uploads an avatar and creates a user
  2. Duplicate signup, with the avatar upload compensated
  3. Booking that decrements event inventory
  4. Low-level coordinator API with the ``transaction()`` context manager
  5. The same booking against a store without native transactions

Run directly:
    python examples/quickstart.py
"""

from __future__ import annotations

from aumai_storetx import (
    BookingWorkflow,
    CoordinatorConfig,
    OperationResponse,
    SignupWorkflow,
    StrategyMode,
    TransactionCoordinator,
    TransactionState,
)
from aumai_storetx.adapters.memory import (
    InMemoryDocumentAdapter,
    InMemoryObjectAdapter,
    InMemoryTransactionalDocumentAdapter,
)

# ---------------------------------------------------------------------------
# Shared setup
# ---------------------------------------------------------------------------


def _build_coordinator(
    native: bool = True,
) -> tuple[TransactionCoordinator, InMemoryDocumentAdapter, InMemoryObjectAdapter]:
    """Build a coordinator over fresh in-memory stores."""
    documents = InMemoryTransactionalDocumentAdapter() if native else InMemoryDocumentAdapter()
    objects = InMemoryObjectAdapter()
    coordinator = TransactionCoordinator(
        documents, objects, CoordinatorConfig(mode=StrategyMode.auto)
    )
    return coordinator, documents, objects


def _seed_event(documents: InMemoryDocumentAdapter) -> None:
    documents.create(
        "events",
        "E1",
        {"name": "Launch Night", "ticketsLeft": "3", "categories": ["VIP:Rs.999:3:Phase 1"]},
    )


def _print_response(response: OperationResponse) -> None:
    print(f"  Success : {response.success}")
    if response.success:
        print(f"  Data    : {response.data}")
    else:
        print(f"  Code    : {response.code.value if response.code else None}")
        print(f"  Error   : {response.error}")
        if response.rollback_status:
            print(f"  Cleanup : {response.rollback_status}")


_SIGNUP = {"userId": "u-001", "name": "Alice", "email": "alice@example.com"}


# ---------------------------------------------------------------------------
# Demo 1: Signup
# ---------------------------------------------------------------------------


def demo_signup() -> None:
    """Upload an avatar and create the user in one transaction."""
    print("\n=== Demo 1: Signup ===")
    coordinator, documents, objects = _build_coordinator()

    response = SignupWorkflow(coordinator).run({**_SIGNUP, "avatar": b"\x89PNG..."})
    _print_response(response)

    assert response.success
    assert documents.get("users", "u-001") is not None
    assert len(objects.keys("avatars")) == 1
    print("\n  Assertions passed.")


# ---------------------------------------------------------------------------
# Demo 2: Duplicate signup
# ---------------------------------------------------------------------------


def demo_duplicate_signup() -> None:
    """A second signup with the same email fails and its avatar is removed."""
    print("\n=== Demo 2: Duplicate Signup ===")
    coordinator, _, objects = _build_coordinator()
    workflow = SignupWorkflow(coordinator)

    workflow.run({**_SIGNUP, "avatar": b"first"})
    response = workflow.run({**_SIGNUP, "userId": "u-002", "avatar": b"second"})
    _print_response(response)

    assert not response.success
    assert response.details == {"existingId": "u-001"}
    assert len(objects.keys("avatars")) == 1
    print("\n  Assertions passed.")


# ---------------------------------------------------------------------------
# Demo 3: Booking
# ---------------------------------------------------------------------------


def demo_booking() -> None:
    """Book two VIP tickets; the event inventory drops accordingly."""
    print("\n=== Demo 3: Booking ===")
    coordinator, documents, _ = _build_coordinator()
    _seed_event(documents)

    response = BookingWorkflow(coordinator).run(
        {
            "userId": "u-001",
            "eventId": "E1",
            "paymentId": "pay_001",
            "quantity": 2,
            "ticketTypeName": "VIP",
            "totalAmountPaid": 1998,
        }
    )
    _print_response(response)

    event = documents.get("events", "E1")
    assert response.success
    assert event is not None and event.data["ticketsLeft"] == "1"
    print("\n  Assertions passed.")


# ---------------------------------------------------------------------------
# Demo 4: Low-level coordinator API
# ---------------------------------------------------------------------------


def demo_context_manager() -> None:
    """Drive the coordinator directly: commit on exit, roll back on error."""
    print("\n=== Demo 4: Coordinator Context Manager ===")
    coordinator, documents, _ = _build_coordinator()

    with coordinator.transaction() as ctx:
        coordinator.upload(ctx, b"report", "reports", content_type="text/plain")
        coordinator.stage(ctx, "create", "reports", "r-001", {"title": "Q3"})
    print(f"  First context  : {ctx.state.value}")

    try:
        with coordinator.transaction() as failed:
            coordinator.stage(failed, "create", "reports", "r-002", {"title": "Q4"})
            raise RuntimeError("caller changed its mind")
    except RuntimeError:
        pass
    print(f"  Second context : {failed.state.value}")

    assert ctx.state == TransactionState.committed
    assert failed.state == TransactionState.rolled_back
    assert documents.get("reports", "r-002") is None
    print("\n  Assertions passed.")


# ---------------------------------------------------------------------------
# Demo 5: Fallback mode
# ---------------------------------------------------------------------------


def demo_fallback_booking() -> None:
    """Run the booking against a store without transactions (saga fallback)."""
    print("\n=== Demo 5: Fallback Booking ===")
    coordinator, documents, _ = _build_coordinator(native=False)
    _seed_event(documents)
    workflow = BookingWorkflow(coordinator)
    request = {
        "userId": "u-001",
        "eventId": "E1",
        "paymentId": "pay_002",
        "quantity": 1,
        "ticketTypeName": "VIP",
    }

    first = workflow.run(request)
    repeat = workflow.run(request)
    _print_response(first)
    _print_response(repeat)

    assert first.data["mode"] == "fallback"
    assert repeat.details["existingTicketId"] == first.data["ticketId"]
    assert documents.count("tickets") == 1
    print("\n  Assertions passed.")


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run all quickstart demos in sequence."""
    print("aumai-storetx quickstart")
    print("=" * 50)

    demo_signup()
    demo_duplicate_signup()
    demo_booking()
    demo_context_manager()
    demo_fallback_booking()

    print("\n" + "=" * 50)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
