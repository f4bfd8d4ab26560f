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

import unittest

from multidict import CIMultiDict

from opentelemetry.instrumentation.async_http_client.headers import (
    REQUEST_HEADER_PREFIX,
    RESPONSE_HEADER_PREFIX,
    HeaderAllowlist,
    normalise_header_name,
)


class TestHeaderAllowlist(unittest.TestCase):
    def test_empty_list_matches_nothing(self):
        allowlist = HeaderAllowlist([])

        self.assertFalse(allowlist)
        self.assertFalse(allowlist.matches("content_type"))
        self.assertFalse(allowlist.matches(""))
        self.assertEqual(
            allowlist.collect({"Content-Type": "text/plain"}, "prefix"), {}
        )

    def test_none_matches_nothing(self):
        self.assertFalse(HeaderAllowlist(None))
        self.assertFalse(HeaderAllowlist(["", "  "]))

    def test_matches_case_and_separator_insensitively(self):
        allowlist = HeaderAllowlist(["Content-Type"])

        self.assertTrue(allowlist)
        self.assertTrue(allowlist.matches("content-type"))
        self.assertTrue(allowlist.matches("Content-Type"))
        self.assertTrue(allowlist.matches("CONTENT_TYPE"))
        self.assertFalse(allowlist.matches("x-content-type"))
        self.assertFalse(allowlist.matches("content-type-options"))

    def test_names_are_literals(self):
        allowlist = HeaderAllowlist(["X-.*", "a+b"])

        self.assertTrue(allowlist.matches("x-.*"))
        self.assertTrue(allowlist.matches("A+B"))
        self.assertFalse(allowlist.matches("x-request-id"))
        self.assertFalse(allowlist.matches("aab"))

    def test_alternation(self):
        allowlist = HeaderAllowlist(["Accept", "X-Request-Id"])

        self.assertTrue(allowlist.matches("accept"))
        self.assertTrue(allowlist.matches("x_request_id"))
        self.assertFalse(allowlist.matches("accept_encoding"))

    def test_normalise_header_name(self):
        self.assertEqual(
            normalise_header_name("X-Custom-Header"), "x_custom_header"
        )

    def test_collect_single_value(self):
        allowlist = HeaderAllowlist(["content-type"])
        headers = CIMultiDict(
            [("Content-Type", "text/plain"), ("Accept", "*/*")]
        )

        self.assertEqual(
            allowlist.collect(headers, RESPONSE_HEADER_PREFIX),
            {"http.response.header.content_type": ("text/plain",)},
        )

    def test_collect_multiple_values_in_order(self):
        allowlist = HeaderAllowlist(["X-Forwarded-For"])
        headers = CIMultiDict(
            [
                ("X-Forwarded-For", "a"),
                ("Accept", "*/*"),
                ("x-forwarded-for", "b"),
            ]
        )

        self.assertEqual(
            allowlist.collect(headers, REQUEST_HEADER_PREFIX),
            {"http.request.header.x_forwarded_for": ("a", "b")},
        )

    def test_collect_list_values(self):
        allowlist = HeaderAllowlist(["Via"])

        self.assertEqual(
            allowlist.collect({"Via": ["1.1 a", "1.1 b"]}, "prefix"),
            {"prefix.via": ("1.1 a", "1.1 b")},
        )

    def test_collect_redacts_sensitive_values(self):
        allowlist = HeaderAllowlist(["Authorization", "Accept"])
        sensitive = HeaderAllowlist(["authorization"])
        headers = CIMultiDict(
            [("Authorization", "Bearer secret"), ("Accept", "*/*")]
        )

        self.assertEqual(
            allowlist.collect(headers, REQUEST_HEADER_PREFIX, sensitive),
            {
                "http.request.header.authorization": ("[REDACTED]",),
                "http.request.header.accept": ("*/*",),
            },
        )

    def test_collect_without_headers(self):
        self.assertEqual(
            HeaderAllowlist(["Accept"]).collect(None, "prefix"), {}
        )
