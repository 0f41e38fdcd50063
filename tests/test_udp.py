"""Tests for the UDP vehicle link over loopback sockets."""

import asyncio
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from tello_relay.adapters import DeviceLink, DeviceLinkError
from tello_relay.config import DeviceConfig
from tello_relay.core import ExchangeInFlightError


class FakeVehicle(asyncio.DatagramProtocol):
    """Loopback vehicle answering commands from a reply table."""

    def __init__(self, replies: Optional[Dict[str, Optional[str]]] = None) -> None:
        self.replies = dict(replies or {})
        self.received: List[str] = []
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        command = data.decode()
        self.received.append(command)
        reply = self.replies.get(command, "ok")
        if reply is not None:
            self.transport.sendto(reply.encode(), addr)


@pytest_asyncio.fixture
async def vehicle():
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        FakeVehicle, local_addr=("127.0.0.1", 0)
    )
    yield protocol
    transport.close()


@pytest_asyncio.fixture
async def link(vehicle):
    port = vehicle.transport.get_extra_info("sockname")[1]
    device = DeviceLink(
        DeviceConfig(host="127.0.0.1", command_port=port, local_host="127.0.0.1", local_port=0)
    )
    await device.open()
    yield device
    device.close()


@pytest.mark.asyncio
async def test_exchange_returns_vehicle_reply(link, vehicle):
    vehicle.replies["battery?"] = "87\r\n"

    assert await link.exchange("battery?", 1.0) == "87"
    assert await link.exchange("takeoff", 1.0) == "ok"
    assert vehicle.received == ["battery?", "takeoff"]


@pytest.mark.asyncio
async def test_exchange_times_out_without_reply(link, vehicle):
    vehicle.replies["forward 20"] = None
    loop = asyncio.get_running_loop()

    started = loop.time()
    assert await link.exchange("forward 20", 0.1) is None
    assert loop.time() - started >= 0.09

    # The slot is free again for the next command.
    assert await link.exchange("land", 1.0) == "ok"


@pytest.mark.asyncio
async def test_datagrams_from_other_ports_are_ignored(link, vehicle):
    vehicle.replies["cw 90"] = None
    loop = asyncio.get_running_loop()
    stray, _ = await loop.create_datagram_endpoint(
        asyncio.DatagramProtocol, local_addr=("127.0.0.1", 0)
    )
    try:
        started = loop.time()
        pending = asyncio.ensure_future(link.exchange("cw 90", 0.3))
        await asyncio.sleep(0.05)
        stray.sendto(b"ok", link.local_address)
        await asyncio.sleep(0.2)
        stray.sendto(b"ok", link.local_address)

        assert await pending is None
        # Stray traffic must not restart the 0.3s wait.
        assert loop.time() - started < 0.5
    finally:
        stray.close()


@pytest.mark.asyncio
async def test_concurrent_exchange_is_rejected(link, vehicle):
    vehicle.replies["takeoff"] = None

    pending = asyncio.ensure_future(link.exchange("takeoff", 0.2))
    await asyncio.sleep(0)

    with pytest.raises(ExchangeInFlightError):
        await link.exchange("land", 0.2)

    assert await pending is None


@pytest.mark.asyncio
async def test_exchange_requires_open_link():
    device = DeviceLink(DeviceConfig(host="127.0.0.1", command_port=9, local_port=0))

    with pytest.raises(DeviceLinkError):
        await device.exchange("command", 0.1)


@pytest.mark.asyncio
async def test_enter_sdk_mode_accepts_ok(link, vehicle):
    await link.enter_sdk_mode(1.0)

    assert vehicle.received == ["command"]


@pytest.mark.asyncio
async def test_enter_sdk_mode_refused(link, vehicle):
    vehicle.replies["command"] = "error"

    with pytest.raises(DeviceLinkError):
        await link.enter_sdk_mode(1.0)


@pytest.mark.asyncio
async def test_open_fails_when_port_is_taken(link):
    _, port = link.local_address
    other = DeviceLink(
        DeviceConfig(host="127.0.0.1", command_port=9, local_host="127.0.0.1", local_port=port)
    )

    with pytest.raises(DeviceLinkError):
        await other.open()
    assert other.is_open is False
