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

"""Correlation of the callbacks an async HTTP client fires for one request.

A client reports the progress of a request through independent callbacks
that share no call stack: the request starts, a connection is picked, zero
or more redirects are followed and finally a response arrives or the request
fails. `RequestLifecycleCorrelator` ties those callbacks to a single CLIENT
span, using the request object as the only correlation key::

    on_request_start ──> on_request_sent* / on_connect* / on_redirect*
                     ──> on_response | on_error | on_cancel

The terminal call ends the span and forgets the request. Any call for a
request the correlator does not track is ignored.
"""

from __future__ import annotations

import functools
import logging
import re
import typing

from opentelemetry import trace
from opentelemetry.instrumentation.async_http_client.attributes import (
    HTTP_RESEND_COUNT,
    build_request_attributes,
    build_response_attributes,
    build_sent_request_attributes,
)
from opentelemetry.instrumentation.async_http_client.headers import (
    HeaderAllowlist,
)
from opentelemetry.instrumentation.async_http_client.registry import (
    SpanRegistry,
)
from opentelemetry.instrumentation.async_http_client.transport import (
    inspect_transport,
)
from opentelemetry.instrumentation.utils import (
    is_http_instrumentation_enabled,
)
from opentelemetry.propagate import inject
from opentelemetry.propagators.textmap import Setter, default_setter
from opentelemetry.semconv.attributes.error_attributes import ERROR_TYPE
from opentelemetry.trace import Span, SpanKind, Tracer
from opentelemetry.trace.status import Status, StatusCode
from opentelemetry.util.http import ExcludeList, sanitize_method

_logger = logging.getLogger(__name__)

# Some clients report transport failures as a response with this status.
SENTINEL_STATUS = 599

_DIAGNOSTIC_SUFFIX = re.compile(r" at \S+ line \d+\.\Z", re.ASCII)

_RequestHookT = typing.Optional[typing.Callable[[Span, "RequestInfo"], None]]
_ResponseHookT = typing.Optional[
    typing.Callable[[Span, "ResponseInfo"], None]
]


class RequestInfo:
    """An outgoing request as seen by the correlator.

    The same instance must be used for every callback of one logical
    request, redirects included. ``headers`` is written to when the trace
    context is injected.
    """

    def __init__(self, method: str, url, headers=None, body_size: int = 0):
        self.method = method
        self.url = url
        self.headers = headers
        self.body_size = body_size

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.method}>"


class ResponseInfo(typing.NamedTuple):
    request: RequestInfo
    status: int
    is_success: bool
    headers: typing.Any = None
    # body text, only read for the sentinel status
    text: str = ""
    # redirects already followed before this response
    redirects: int = 0


class Failure(typing.NamedTuple):
    description: str

    @classmethod
    def from_text(cls, text: str) -> "Failure":
        """Trims ``text`` and drops a trailing ``at <file> line <n>.``."""
        return cls(_DIAGNOSTIC_SUFFIX.sub("", text.strip()))

    @classmethod
    def from_exception(cls, error) -> "Failure":
        failure = cls.from_text(str(error))
        if not failure.description and isinstance(error, BaseException):
            return cls(type(error).__qualname__)
        return failure


def _get_span_name(method: str) -> str:
    method = sanitize_method(method.strip())
    if method == "_OTHER":
        method = "HTTP"
    return method


def _handle_internal_errors(func):
    """Logs failures of ``func`` instead of raising them into the client."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception:  # pylint: disable=broad-exception-caught
            _logger.exception(
                "Failed to trace HTTP request in %s", func.__name__
            )
            return None

    return wrapper


class RequestLifecycleCorrelator:
    """Drives one CLIENT span per request through its lifecycle callbacks.

    Args:
        tracer: tracer creating the request spans
        request_headers: request headers recorded as span attributes
        response_headers: response headers recorded as span attributes
        sensitive_headers: captured headers whose values are redacted
        excluded_urls: requests to these URLs are not traced
        request_hook: called with the span right after it was started
        response_hook: called with the span and response before it ends
        setter: used to write trace context headers onto a request
    """

    def __init__(
        self,
        tracer: Tracer,
        request_headers: typing.Optional[HeaderAllowlist] = None,
        response_headers: typing.Optional[HeaderAllowlist] = None,
        sensitive_headers: typing.Optional[HeaderAllowlist] = None,
        excluded_urls: typing.Optional[ExcludeList] = None,
        request_hook: _RequestHookT = None,
        response_hook: _ResponseHookT = None,
        setter: Setter = default_setter,
    ):
        self._tracer = tracer
        self._request_headers = request_headers or HeaderAllowlist()
        self._response_headers = response_headers or HeaderAllowlist()
        self._sensitive_headers = sensitive_headers
        self._excluded_urls = excluded_urls
        self._request_hook = request_hook
        self._response_hook = response_hook
        self._setter = setter
        self._spans = SpanRegistry()

    def span_for(self, request) -> typing.Optional[Span]:
        """Returns the open span of ``request``, if it is being traced."""
        return self._spans.get(request)

    @_handle_internal_errors
    def on_request_start(self, request: RequestInfo) -> None:
        if not is_http_instrumentation_enabled():
            return
        if self._excluded_urls and self._excluded_urls.url_disabled(
            str(request.url)
        ):
            return

        span = self._tracer.start_span(
            _get_span_name(request.method),
            kind=SpanKind.CLIENT,
            attributes=build_request_attributes(
                request, self._request_headers, self._sensitive_headers
            ),
        )
        self._spans.put(request, span)

        inject(
            request.headers,
            context=trace.set_span_in_context(span),
            setter=self._setter,
        )

        if callable(self._request_hook):
            self._request_hook(span, request)

    @_handle_internal_errors
    def on_request_sent(
        self, request: RequestInfo, headers=None, body_size: int = 0
    ) -> None:
        """Records the headers and body the client actually wrote."""
        span = self._spans.get(request)
        if span is None:
            return

        span.set_attributes(build_sent_request_attributes(headers, body_size))

    @_handle_internal_errors
    def on_connect(self, request: RequestInfo, handle) -> None:
        span = self._spans.get(request)
        if span is None:
            return

        facts = inspect_transport(handle)
        if facts is None:
            return
        span.set_attributes(facts.attributes())

    @_handle_internal_errors
    def on_redirect(self, response: ResponseInfo) -> None:
        span = self._spans.get(response.request)
        if span is None:
            return

        if response.redirects:
            span.set_attribute(HTTP_RESEND_COUNT, response.redirects)

    @_handle_internal_errors
    def on_response(self, response: ResponseInfo) -> None:
        span = self._spans.remove(response.request)
        if span is None:
            return

        if response.redirects:
            span.set_attribute(HTTP_RESEND_COUNT, response.redirects)

        if response.status == SENTINEL_STATUS:
            failure = Failure.from_text(response.text or "")
            span.set_status(Status(StatusCode.ERROR, failure.description))
            span.end()
            return

        if response.is_success:
            span.set_status(Status(StatusCode.OK))
        else:
            span.set_status(Status(StatusCode.ERROR, str(response.status)))

        span.set_attributes(
            build_response_attributes(
                response, self._response_headers, self._sensitive_headers
            )
        )

        if callable(self._response_hook):
            self._response_hook(span, response)

        span.end()

    @_handle_internal_errors
    def on_error(self, request: RequestInfo, error) -> None:
        span = self._spans.remove(request)
        if span is None:
            return

        failure = Failure.from_exception(error)
        span.set_status(Status(StatusCode.ERROR, failure.description))
        if isinstance(error, BaseException):
            span.set_attribute(ERROR_TYPE, type(error).__qualname__)
            span.record_exception(error)
        span.end()

    @_handle_internal_errors
    def on_cancel(self, request: RequestInfo) -> None:
        """Ends the span of a request the client gave up on."""
        span = self._spans.remove(request)
        if span is None:
            return

        span.set_status(Status(StatusCode.ERROR, "cancelled"))
        span.set_attribute(ERROR_TYPE, "cancelled")
        span.end()
