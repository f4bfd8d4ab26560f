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

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import yarl

from opentelemetry.instrumentation.async_http_client.headers import (
    REQUEST_HEADER_PREFIX,
    RESPONSE_HEADER_PREFIX,
    HeaderAllowlist,
)
from opentelemetry.semconv._incubating.attributes.http_attributes import (
    HTTP_REQUEST_BODY_SIZE,
    HTTP_RESPONSE_BODY_SIZE,
)
from opentelemetry.semconv.attributes.http_attributes import (
    HTTP_REQUEST_METHOD,
    HTTP_RESPONSE_STATUS_CODE,
)
from opentelemetry.semconv.attributes.network_attributes import (
    NETWORK_PROTOCOL_NAME,
    NETWORK_PROTOCOL_VERSION,
    NETWORK_TRANSPORT,
    NetworkTransportValues,
)
from opentelemetry.semconv.attributes.server_attributes import (
    SERVER_ADDRESS,
    SERVER_PORT,
)
from opentelemetry.semconv.attributes.url_attributes import (
    URL_FULL,
    URL_SCHEME,
)
from opentelemetry.semconv.attributes.user_agent_attributes import (
    USER_AGENT_ORIGINAL,
)
from opentelemetry.util.http import remove_url_credentials

_logger = logging.getLogger(__name__)

HTTP_RESEND_COUNT = "http.resend_count"

_NO_HEADERS = HeaderAllowlist()


def redact_credentials(url: Any) -> yarl.URL:
    """Returns a copy of ``url`` with any user-info replaced by a placeholder.

    The original URL is left untouched.
    """
    return yarl.URL(remove_url_credentials(str(url)))


def _header(headers: Any, name: str) -> Optional[str]:
    if headers is None:
        return None
    return headers.get(name)


def _content_length(headers: Any) -> Optional[int]:
    value = _header(headers, "Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        _logger.debug("Ignoring invalid Content-Length %r", value)
        return None


def build_request_attributes(
    request,
    request_headers: HeaderAllowlist = _NO_HEADERS,
    sensitive_headers: Optional[HeaderAllowlist] = None,
) -> Dict[str, Any]:
    """Span attributes describing an outgoing request.

    Credentials in ``request.url`` are redacted before the URL is recorded.
    The transport is provisionally ``tcp`` until the connection is known.
    """
    url = redact_credentials(request.url)
    attributes = {
        HTTP_REQUEST_METHOD: request.method,
        NETWORK_PROTOCOL_NAME: "http",
        NETWORK_PROTOCOL_VERSION: "1.1",
        NETWORK_TRANSPORT: NetworkTransportValues.TCP.value,
        URL_FULL: str(url),
    }
    if url.host:
        attributes[SERVER_ADDRESS] = url.host
    if url.port is not None:
        attributes[SERVER_PORT] = url.port
    if url.scheme:
        attributes[URL_SCHEME] = url.scheme

    user_agent = _header(request.headers, "User-Agent")
    if user_agent is not None:
        attributes[USER_AGENT_ORIGINAL] = user_agent

    if request.body_size:
        attributes[HTTP_REQUEST_BODY_SIZE] = request.body_size

    attributes.update(
        request_headers.collect(
            request.headers, REQUEST_HEADER_PREFIX, sensitive_headers
        )
    )
    return attributes


def build_sent_request_attributes(
    headers: Any = None, body_size: int = 0
) -> Dict[str, Any]:
    """Span attributes known only once the request has been written.

    The client fills in defaults such as ``User-Agent`` and
    ``Content-Length`` after the request started. ``body_size`` is the
    number of body bytes written so far and wins over ``Content-Length``.
    """
    attributes = {}
    user_agent = _header(headers, "User-Agent")
    if user_agent is not None:
        attributes[USER_AGENT_ORIGINAL] = user_agent

    if not body_size:
        body_size = _content_length(headers) or 0
    if body_size:
        attributes[HTTP_REQUEST_BODY_SIZE] = body_size
    return attributes


def build_response_attributes(
    response,
    response_headers: HeaderAllowlist = _NO_HEADERS,
    sensitive_headers: Optional[HeaderAllowlist] = None,
) -> Dict[str, Any]:
    attributes = {HTTP_RESPONSE_STATUS_CODE: response.status}

    body_size = _content_length(response.headers)
    if body_size is not None:
        attributes[HTTP_RESPONSE_BODY_SIZE] = body_size

    attributes.update(
        response_headers.collect(
            response.headers, RESPONSE_HEADER_PREFIX, sensitive_headers
        )
    )
    return attributes
