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

import socket
import unittest

from opentelemetry.instrumentation.async_http_client.transport import (
    TransportFacts,
    inspect_transport,
)
from opentelemetry.semconv.attributes.network_attributes import (
    NETWORK_PEER_ADDRESS,
    NETWORK_PEER_PORT,
    NETWORK_TRANSPORT,
)


class FakeHandle:
    def __init__(
        self,
        family=None,
        proto=0,
        sock_type=socket.SOCK_STREAM,
        peer=None,
        peer_error=None,
    ):
        self.family = family
        self.proto = proto
        self.type = sock_type
        self._peer = peer
        self._peer_error = peer_error

    def getpeername(self):
        if self._peer_error is not None:
            raise self._peer_error
        return self._peer


class TestInspectTransport(unittest.TestCase):
    def test_no_handle_is_pipe(self):
        facts = inspect_transport(None)

        self.assertEqual(facts, TransportFacts(transport="pipe"))
        self.assertEqual(facts.attributes(), {NETWORK_TRANSPORT: "pipe"})

    def test_handle_without_family_is_pipe(self):
        self.assertEqual(inspect_transport(object()).transport, "pipe")
        self.assertEqual(
            inspect_transport(FakeHandle(family=None)).transport, "pipe"
        )

    @unittest.skipUnless(hasattr(socket, "AF_UNIX"), "requires AF_UNIX")
    def test_unix_handle(self):
        facts = inspect_transport(
            FakeHandle(family=socket.AF_UNIX, peer="/tmp/s")
        )

        self.assertEqual(
            facts.attributes(),
            {NETWORK_TRANSPORT: "unix", NETWORK_PEER_ADDRESS: "/tmp/s"},
        )
        self.assertNotIn(NETWORK_PEER_PORT, facts.attributes())

    @unittest.skipUnless(hasattr(socket, "AF_UNIX"), "requires AF_UNIX")
    def test_unnamed_unix_handle(self):
        facts = inspect_transport(FakeHandle(family=socket.AF_UNIX, peer=""))

        self.assertEqual(facts.attributes(), {NETWORK_TRANSPORT: "unix"})

    def test_ipv4_tcp_handle(self):
        facts = inspect_transport(
            FakeHandle(
                family=socket.AF_INET,
                proto=socket.IPPROTO_TCP,
                peer=("10.0.0.1", 443),
            )
        )

        self.assertEqual(
            facts.attributes(),
            {
                NETWORK_TRANSPORT: "tcp",
                NETWORK_PEER_ADDRESS: "10.0.0.1",
                NETWORK_PEER_PORT: 443,
            },
        )

    def test_ipv6_udp_handle(self):
        facts = inspect_transport(
            FakeHandle(
                family=socket.AF_INET6,
                proto=socket.IPPROTO_UDP,
                sock_type=socket.SOCK_DGRAM,
                peer=("::1", 53, 0, 0),
            )
        )

        self.assertEqual(
            facts,
            TransportFacts(transport="udp", peer_address="::1", peer_port=53),
        )

    def test_unknown_protocol_omits_transport(self):
        facts = inspect_transport(
            FakeHandle(
                family=socket.AF_INET,
                proto=socket.IPPROTO_ICMP,
                peer=("10.0.0.1", 0),
            )
        )

        self.assertIsNone(facts.transport)
        self.assertEqual(
            facts.attributes(),
            {NETWORK_PEER_ADDRESS: "10.0.0.1", NETWORK_PEER_PORT: 0},
        )

    def test_protocol_falls_back_to_socket_type(self):
        facts = inspect_transport(
            FakeHandle(
                family=socket.AF_INET,
                proto=0,
                sock_type=socket.SOCK_DGRAM,
                peer=("10.0.0.1", 53),
            )
        )

        self.assertEqual(facts.transport, "udp")

    def test_unknown_family_reports_nothing(self):
        unknown_family = max(int(family) for family in socket.AddressFamily)

        self.assertIsNone(
            inspect_transport(FakeHandle(family=unknown_family + 1))
        )

    def test_disconnected_handle_omits_peer(self):
        facts = inspect_transport(
            FakeHandle(
                family=socket.AF_INET,
                proto=socket.IPPROTO_TCP,
                peer_error=OSError("not connected"),
            )
        )

        self.assertEqual(facts.attributes(), {NETWORK_TRANSPORT: "tcp"})

    def test_connected_tcp_socket(self):
        with socket.create_server(("127.0.0.1", 0)) as server:
            port = server.getsockname()[1]
            with socket.create_connection(("127.0.0.1", port)) as client:
                facts = inspect_transport(client)

        self.assertEqual(
            facts,
            TransportFacts(
                transport="tcp", peer_address="127.0.0.1", peer_port=port
            ),
        )
