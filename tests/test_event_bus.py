from planwright.event_bus import EventBus, PlanEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[PlanEvent] = []

    def dummy_subscriber(event: PlanEvent):
        received_events.append(event)

    test_bus.subscribe(dummy_subscriber)

    test_bus.emit(
        event_type="TEST_EVENT",
        source="test_source",
        payload={"key": "value"}
    )

    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "TEST_EVENT"
    assert event.source == "test_source"
    assert event.payload == {"key": "value"}

    # Auto-generated fields
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_failing_subscriber_does_not_stop_others():
    test_bus = EventBus()
    received: list[str] = []

    def broken(event: PlanEvent):
        raise OSError("disk full")

    test_bus.subscribe(broken)
    test_bus.subscribe(lambda e: received.append(e.event_type))

    test_bus.emit("STEP", "controller", {})
    assert received == ["STEP"]


def test_filtered_subscriber_only_sees_its_types():
    test_bus = EventBus()
    steps: list[str] = []
    test_bus.subscribe(lambda e: steps.append(e.payload["description"]), event_types=["step_completed"])

    test_bus.emit("state_changed", "controller", {"from": "idle", "to": "planning"})
    test_bus.emit("step_completed", "echo", {"description": "first"})

    assert steps == ["first"]


def test_unsubscribe_stops_delivery():
    test_bus = EventBus()
    received: list[PlanEvent] = []
    unsubscribe = test_bus.subscribe(received.append)

    test_bus.emit("A", "controller")
    unsubscribe()
    test_bus.emit("B", "controller")

    assert [e.event_type for e in received] == ["A"]
    assert received[0].payload == {}
