"""
Unit tests for change notification fan-out.
"""

from harbormaster.core.models import (
    ChangeEvent,
    OperationResult,
    ResourceAction,
    ResourceType,
    ResultStatus,
    ServiceResult,
    SubOperation,
)
from harbormaster.core.notifier import ChangeNotifier


def _op(resource, action, name="x", error=None):
    return SubOperation(resource=resource, action=action, name=name, error=error)


def test_subscribe_and_unsubscribe():
    notifier = ChangeNotifier()
    received = []
    unsubscribe = notifier.subscribe(received.append)
    assert notifier.subscriber_count == 1

    event = ChangeEvent(type=ResourceType.CONTAINER, project="demo", action=ResourceAction.STARTED)
    notifier.publish(event)
    unsubscribe()
    notifier.publish(event)

    assert received == [event]
    assert notifier.subscriber_count == 0


def test_failing_subscriber_does_not_block_others():
    notifier = ChangeNotifier()
    received = []

    def broken(event):
        raise RuntimeError("subscriber down")

    notifier.subscribe(broken)
    notifier.subscribe(received.append)
    notifier.publish(ChangeEvent(type=ResourceType.NETWORK, project="demo", action=ResourceAction.CREATED))

    assert len(received) == 1


def test_one_event_per_category_of_success():
    notifier = ChangeNotifier()
    received = []
    notifier.subscribe(received.append)
    result = OperationResult(
        operation="up",
        project="demo",
        status=ResultStatus.PARTIALLY_APPLIED,
        operations=[_op(ResourceType.NETWORK, ResourceAction.CREATED)],
        services=[ServiceResult(service="web", operations=[
            _op(ResourceType.CONTAINER, ResourceAction.CREATED, "demo-web-0"),
            _op(ResourceType.CONTAINER, ResourceAction.CREATED, "demo-web-1"),
            _op(ResourceType.CONTAINER, ResourceAction.STARTED, "demo-web-0"),
            _op(ResourceType.CONTAINER, ResourceAction.STARTED, "demo-web-1", error="boom"),
        ])],
    )

    events = notifier.publish_result(result)

    assert [(e.type, e.action) for e in events] == [
        (ResourceType.NETWORK, ResourceAction.CREATED),
        (ResourceType.CONTAINER, ResourceAction.CREATED),
        (ResourceType.CONTAINER, ResourceAction.STARTED),
    ]
    assert received == events
    assert all(e.project == "demo" for e in events)


def test_failed_result_emits_nothing():
    notifier = ChangeNotifier()
    received = []
    notifier.subscribe(received.append)
    result = OperationResult(
        operation="up",
        project="demo",
        status=ResultStatus.FAILED,
        operations=[_op(ResourceType.NETWORK, ResourceAction.CREATED)],
    )

    assert notifier.publish_result(result) == []
    assert received == []


def test_noop_result_emits_nothing():
    notifier = ChangeNotifier()
    assert notifier.publish_result(OperationResult(operation="up", project="demo")) == []
