import asyncio

import pytest
from fastapi.testclient import TestClient

from ordered_multicast.communication import HttpTransport
from ordered_multicast.logger import logger
from ordered_multicast.main import create_app, monitor_stalls
from ordered_multicast.models import Ack
from ordered_multicast.process_logic import DeliveryEngine
from tests.mocks import RecordingOutbox, RecordingTransport, peer_address


def message_body(timestamp, origin, payload="X"):
    return {"id": {"timestamp": timestamp, "originProcessId": origin}, "payload": payload}


def ack_body(timestamp, origin, sender):
    return {"messageId": {"timestamp": timestamp, "originProcessId": origin}, "fromProcessId": sender}


@pytest.fixture
def pair_client():
    """Processo P1 em um grupo de dois, com P2 como único par."""
    app = create_app(process_id=1, group_size=2, peers=[peer_address(2)], transport=RecordingTransport())
    with TestClient(app) as client:
        yield client


def test_root_reports_process_and_clock():
    app = create_app(process_id=1, group_size=1, peers=[], transport=RecordingTransport())
    with TestClient(app) as client:
        assert client.get("/").json() == {"process_id": 1, "current_clock": 0, "status": "Running"}


def test_send_in_group_of_one_delivers_immediately():
    app = create_app(process_id=1, group_size=1, peers=[], transport=RecordingTransport())
    with TestClient(app) as client:
        response = client.post("/multicast/send", json={"payload": "hello"})
        assert response.status_code == 202
        assert response.json()["messageId"] == {"timestamp": 1, "originProcessId": 1}

        delivered = client.get("/multicast/delivered").json()["delivered"]
        assert delivered == [message_body(1, 1, "hello")]


def test_message_from_peer_is_delivered_with_full_acks(pair_client):
    response = pair_client.post("/multicast/message", json=message_body(4, 2, "from-p2"))
    assert response.status_code == 200

    assert pair_client.get("/multicast/delivered").json()["delivered"] == [message_body(4, 2, "from-p2")]
    status = pair_client.get("/multicast/status").json()
    assert status["clock"] == 5
    assert status["deliveredCount"] == 1
    assert status["lastDelivered"] == {"timestamp": 4, "originProcessId": 2}

    again = pair_client.post("/multicast/message", json=message_body(4, 2, "from-p2"))
    assert again.json()["status"] == "Message already delivered."
    assert pair_client.get("/multicast/status").json()["deliveredCount"] == 1


def test_own_message_waits_for_peer_ack(pair_client):
    pair_client.post("/multicast/send", json={"payload": "mine"})
    status = pair_client.get("/multicast/status").json()
    assert status["pending"] == [{"timestamp": 1, "originProcessId": 1}]
    assert status["headMissingAcks"] == [2]

    response = pair_client.post("/multicast/ack", json=ack_body(1, 1, 2))
    assert response.status_code == 200
    assert pair_client.get("/multicast/delivered").json()["delivered"] == [message_body(1, 1, "mine")]


def test_early_ack_is_recorded(pair_client):
    pair_client.post("/multicast/ack", json=ack_body(3, 2, 2))
    status = pair_client.get("/multicast/status").json()
    assert status["pending"] == []
    assert status["acks"] == [{"messageId": {"timestamp": 3, "originProcessId": 2}, "ackedBy": [2]}]


@pytest.mark.parametrize("path, body", [
    ("/multicast/ack", ack_body(1, 1, 9)),
    ("/multicast/ack", ack_body(1, 5, 2)),
    ("/multicast/message", message_body(1, 3)),
    ("/multicast/message", {"id": {"timestamp": 1}, "payload": "X"}),
    ("/multicast/send", {}),
])
def test_malformed_input_is_rejected(pair_client, path, body):
    assert pair_client.post(path, json=body).status_code == 422
    assert pair_client.get("/multicast/status").json()["acks"] == []


def test_http_client_lives_only_inside_lifespan():
    app = create_app(process_id=1, group_size=1, peers=[])
    assert app.state.outbox.transport is None

    with TestClient(app):
        transport = app.state.outbox.transport
        assert isinstance(transport, HttpTransport)
        assert not transport.client.is_closed

    assert transport.client.is_closed


async def wait_for_log(records, text, attempts=200):
    for _ in range(attempts):
        matching = [record for record in records if text in record["message"]]
        if matching:
            return matching[0]
        await asyncio.sleep(0.01)
    raise AssertionError(f"Nenhum log contendo '{text}'.")


@pytest.mark.asyncio
async def test_stall_monitor_logs_degraded_and_recovery():
    engine = DeliveryEngine(1, 2, [peer_address(2)], RecordingOutbox(), stall_timeout=0.0)
    records = []
    sink_id = logger.add(lambda message: records.append(message.record), level="INFO")
    monitor = asyncio.create_task(monitor_stalls(engine, 0.01))
    try:
        message = engine.multicast_send("X")
        degraded = await wait_for_log(records, "GRUPO DEGRADADO")
        assert degraded["level"].name == "WARNING"
        assert "[2]" in degraded["message"]

        engine.on_ack_received(Ack(message_id=message.id, from_process_id=2))
        recovered = await wait_for_log(records, "Entrega retomada")
        assert recovered["level"].name == "INFO"
    finally:
        monitor.cancel()
        await asyncio.gather(monitor, return_exceptions=True)
        logger.remove(sink_id)

    assert len([record for record in records if "GRUPO DEGRADADO" in record["message"]]) == 1
