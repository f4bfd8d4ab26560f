# Copyright The OpenTelemetry Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Network facts about the socket a request was sent over.

The handle is a ``socket.socket`` or anything shaped like one, such as the
``asyncio.trsock.TransportSocket`` returned by
``transport.get_extra_info("socket")``. ``None`` stands for a transport
without a socket, like a pipe.
"""

from __future__ import annotations

import logging
import socket
import typing

from opentelemetry.semconv.attributes.network_attributes import (
    NETWORK_PEER_ADDRESS,
    NETWORK_PEER_PORT,
    NETWORK_TRANSPORT,
    NetworkTransportValues,
)

_logger = logging.getLogger(__name__)


class TransportFacts(typing.NamedTuple):
    transport: typing.Optional[str] = None
    peer_address: typing.Optional[str] = None
    peer_port: typing.Optional[int] = None

    def attributes(self) -> typing.Dict[str, typing.Any]:
        attributes = {}
        if self.transport is not None:
            attributes[NETWORK_TRANSPORT] = self.transport
        if self.peer_address is not None:
            attributes[NETWORK_PEER_ADDRESS] = self.peer_address
        if self.peer_port is not None:
            attributes[NETWORK_PEER_PORT] = self.peer_port
        return attributes


def _peername(handle) -> typing.Any:
    try:
        return handle.getpeername()
    except OSError as exc:
        _logger.debug("Unable to read peer name of %r: %s", handle, exc)
        return None


class _PipeInspector:
    def inspect(self, handle) -> TransportFacts:
        return TransportFacts(transport=NetworkTransportValues.PIPE.value)


class _UnixInspector:
    def inspect(self, handle) -> TransportFacts:
        path = _peername(handle)
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        return TransportFacts(
            transport=NetworkTransportValues.UNIX.value,
            peer_address=path or None,
        )


class _InetInspector:
    _PROTOCOLS = {
        socket.IPPROTO_TCP: NetworkTransportValues.TCP.value,
        socket.IPPROTO_UDP: NetworkTransportValues.UDP.value,
    }
    # proto is 0 when the socket was created without an explicit protocol
    _SOCKET_TYPES = {
        socket.SOCK_STREAM: NetworkTransportValues.TCP.value,
        socket.SOCK_DGRAM: NetworkTransportValues.UDP.value,
    }

    def inspect(self, handle) -> TransportFacts:
        proto = getattr(handle, "proto", 0)
        if proto:
            transport = self._PROTOCOLS.get(proto)
        else:
            transport = self._SOCKET_TYPES.get(getattr(handle, "type", None))

        peer = _peername(handle)
        peer_address = peer_port = None
        if isinstance(peer, tuple) and len(peer) >= 2:
            peer_address, peer_port = str(peer[0]), int(peer[1])

        return TransportFacts(
            transport=transport,
            peer_address=peer_address,
            peer_port=peer_port,
        )


_PIPE = _PipeInspector()

_INSPECTORS = {
    socket.AF_INET: _InetInspector(),
    socket.AF_INET6: _InetInspector(),
}
if hasattr(socket, "AF_UNIX"):
    _INSPECTORS[socket.AF_UNIX] = _UnixInspector()


def _inspector_for(handle):
    family = getattr(handle, "family", None) if handle is not None else None
    if not family:
        return _PIPE
    return _INSPECTORS.get(family)


def inspect_transport(handle) -> typing.Optional[TransportFacts]:
    """Returns what can be told about ``handle``'s transport and peer.

    ``None`` means the socket family is not one we know how to describe and
    nothing should be recorded.
    """
    inspector = _inspector_for(handle)
    if inspector is None:
        return None
    return inspector.inspect(handle)
