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

"""
The opentelemetry-instrumentation-async-http-client package traces every
request made by an asynchronous HTTP client with a single CLIENT span that
follows the request through connection setup, redirects and its final
response or failure. The aiohttp client is supported through its
`tracing signals <https://docs.aiohttp.org/en/stable/tracing_reference.html>`_.

Usage
-----
Explicitly instrumenting a single client session:

.. code:: python

    import aiohttp
    from opentelemetry.instrumentation.async_http_client import create_trace_config

    async with aiohttp.ClientSession(trace_configs=[create_trace_config(
            request_headers=["Accept", "X-Request-Id"],
            response_headers=["Content-Type"],
    )]) as session:
        async with session.get(url) as response:
            await response.text()

Instrumenting all client sessions:

.. code:: python

    import aiohttp
    from opentelemetry.instrumentation.async_http_client import (
        AsyncHttpClientInstrumentor
    )

    AsyncHttpClientInstrumentor().instrument()

    async with aiohttp.ClientSession() as session:
        async with session.get(url) as response:
            await response.text()

Configuration
-------------

Captured headers
****************
Header names given through ``request_headers`` and ``response_headers`` are
matched as literal, case-insensitive names; ``-`` and ``_`` are
interchangeable. When not given, the comma delimited lists in
``OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_CLIENT_REQUEST`` and
``OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_CLIENT_RESPONSE`` are used.
Each captured header becomes an ``http.request.header.<name>`` or
``http.response.header.<name>`` attribute holding all of its values.

Values of headers listed in ``sensitive_headers`` (or
``OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_SANITIZE_FIELDS``) are recorded
as ``[REDACTED]``.

Exclude lists
*************
To exclude certain URLs from being tracked, set the environment variable
``OTEL_PYTHON_ASYNC_HTTP_CLIENT_EXCLUDED_URLS`` (or
``OTEL_PYTHON_EXCLUDED_URLS`` as fallback) with comma delimited regexes, or
pass ``excluded_urls`` to ``instrument()``.

Request/Response hooks
**********************

.. code-block:: python

    def request_hook(span: Span, request: RequestInfo):
        if span and span.is_recording():
            span.set_attribute("custom_user_attribute_from_request_hook", "some-value")

    def response_hook(span: Span, response: ResponseInfo):
        if span and span.is_recording():
            span.set_attribute("custom_user_attribute_from_response_hook", "some-value")

    AsyncHttpClientInstrumentor().instrument(request_hook=request_hook, response_hook=response_hook)

API
---
"""

import asyncio
import functools
import logging
import typing
from typing import Collection

import aiohttp
import wrapt

from opentelemetry.instrumentation.async_http_client.correlator import (
    SENTINEL_STATUS,
    RequestInfo,
    RequestLifecycleCorrelator,
    ResponseInfo,
    _RequestHookT,
    _ResponseHookT,
)
from opentelemetry.instrumentation.async_http_client.headers import (
    HeaderAllowlist,
)
from opentelemetry.instrumentation.async_http_client.package import (
    _instruments,
)
from opentelemetry.instrumentation.async_http_client.version import (
    __version__,
)
from opentelemetry.instrumentation.instrumentor import BaseInstrumentor
from opentelemetry.instrumentation.utils import (
    is_instrumentation_enabled,
    unwrap,
)
from opentelemetry.semconv.schemas import Schemas
from opentelemetry.trace import TracerProvider, get_tracer
from opentelemetry.util.http import (
    OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_CLIENT_REQUEST,
    OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_CLIENT_RESPONSE,
    OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_SANITIZE_FIELDS,
    ExcludeList,
    get_custom_headers,
    get_excluded_urls,
    parse_excluded_urls,
)

__all__ = [
    "AsyncHttpClientInstrumentor",
    "RequestInfo",
    "ResponseInfo",
    "create_trace_config",
]

_logger = logging.getLogger(__name__)

_excluded_urls_from_env = get_excluded_urls("ASYNC_HTTP_CLIENT")

_HeaderNamesT = typing.Optional[typing.Sequence[str]]

# marks a response whose connection is no longer reachable
_NO_CONNECTION = object()


class _TraceConfigContext:
    """Per-request state aiohttp passes to every tracing signal.

    aiohttp creates one of these for each ``ClientSession._request`` call, so
    it lives exactly as long as the logical request, redirects included.
    """

    def __init__(self, correlator, trace_request_ctx=None):
        self.correlator = correlator
        self.trace_request_ctx = trace_request_ctx
        self.request = None
        self.redirects = 0
        # body bytes written for the current hop
        self.body_sent = 0


def _request_body_size(headers) -> int:
    try:
        return int(headers.get("Content-Length", 0))
    except (TypeError, ValueError):
        return 0


def _connection_socket(response: aiohttp.ClientResponse):
    connection = response.connection
    if connection is not None:
        protocol = connection.protocol
    else:
        # the connection is released as soon as the body has been read;
        # _protocol is private to aiohttp and may be missing
        protocol = getattr(response, "_protocol", None)
    transport = getattr(protocol, "transport", None)
    if transport is None:
        return _NO_CONNECTION
    return transport.get_extra_info("socket")


def _response_info(
    trace_config_ctx: _TraceConfigContext,
    response: aiohttp.ClientResponse,
    text: typing.Optional[str] = None,
) -> ResponseInfo:
    if text is None:
        text = response.reason or ""
    return ResponseInfo(
        request=trace_config_ctx.request,
        status=response.status,
        is_success=response.status < 400,
        headers=response.headers,
        text=text,
        redirects=trace_config_ctx.redirects,
    )


async def _sentinel_text(response: aiohttp.ClientResponse) -> str:
    # the body is cached, so the caller can still read it
    try:
        return await response.text(errors="replace")
    except aiohttp.ClientError as exc:
        _logger.debug("Unable to read body of %s: %s", response.url, exc)
        return ""


def _report_connection(
    trace_config_ctx: _TraceConfigContext, response: aiohttp.ClientResponse
):
    handle = _connection_socket(response)
    if handle is _NO_CONNECTION:
        _logger.debug("No connection to inspect for %s", response.url)
        return
    trace_config_ctx.correlator.on_connect(trace_config_ctx.request, handle)


def _header_allowlist(
    names: _HeaderNamesT, environment_variable: str
) -> HeaderAllowlist:
    if names is None:
        names = get_custom_headers(environment_variable)
    return HeaderAllowlist(names)


def create_trace_config(
    request_headers: _HeaderNamesT = None,
    response_headers: _HeaderNamesT = None,
    sensitive_headers: _HeaderNamesT = None,
    excluded_urls: typing.Optional[ExcludeList] = None,
    request_hook: _RequestHookT = None,
    response_hook: _ResponseHookT = None,
    tracer_provider: TracerProvider = None,
) -> aiohttp.TraceConfig:
    """Create an aiohttp-compatible trace configuration.

    One span is created for the entire HTTP request, including connection
    setup and every redirect that is followed. The span name is the HTTP
    request method.

    :param request_headers: request header names captured as span attributes
    :param response_headers: response header names captured as span attributes
    :param sensitive_headers: captured header names whose values are redacted
    :param excluded_urls: URLs that are not traced
    :param Callable request_hook: Optional callback invoked right after the span is started.
    :param Callable response_hook: Optional callback invoked right before the span ends on a response.
    :param tracer_provider: optional TracerProvider from which to get a Tracer

    :return: An object suitable for use with :py:class:`aiohttp.ClientSession`.
    :rtype: :py:class:`aiohttp.TraceConfig`
    """
    tracer = get_tracer(
        __name__,
        __version__,
        tracer_provider,
        schema_url=Schemas.V1_28_0.value,
    )

    correlator = RequestLifecycleCorrelator(
        tracer,
        request_headers=_header_allowlist(
            request_headers,
            OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_CLIENT_REQUEST,
        ),
        response_headers=_header_allowlist(
            response_headers,
            OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_CLIENT_RESPONSE,
        ),
        sensitive_headers=_header_allowlist(
            sensitive_headers,
            OTEL_INSTRUMENTATION_HTTP_CAPTURE_HEADERS_SANITIZE_FIELDS,
        ),
        excluded_urls=excluded_urls,
        request_hook=request_hook,
        response_hook=response_hook,
    )

    async def on_request_start(
        unused_session: aiohttp.ClientSession,
        trace_config_ctx: _TraceConfigContext,
        params: aiohttp.TraceRequestStartParams,
    ):
        trace_config_ctx.request = RequestInfo(
            params.method,
            params.url,
            params.headers,
            _request_body_size(params.headers),
        )
        trace_config_ctx.correlator.on_request_start(trace_config_ctx.request)

    async def on_request_headers_sent(
        unused_session: aiohttp.ClientSession,
        trace_config_ctx: _TraceConfigContext,
        params: aiohttp.TraceRequestHeadersSentParams,
    ):
        trace_config_ctx.correlator.on_request_sent(
            trace_config_ctx.request,
            params.headers,
            trace_config_ctx.body_sent,
        )

    async def on_request_chunk_sent(
        unused_session: aiohttp.ClientSession,
        trace_config_ctx: _TraceConfigContext,
        params: aiohttp.TraceRequestChunkSentParams,
    ):
        trace_config_ctx.body_sent += len(params.chunk)
        trace_config_ctx.correlator.on_request_sent(
            trace_config_ctx.request, body_size=trace_config_ctx.body_sent
        )

    async def on_request_redirect(
        unused_session: aiohttp.ClientSession,
        trace_config_ctx: _TraceConfigContext,
        params: aiohttp.TraceRequestRedirectParams,
    ):
        _report_connection(trace_config_ctx, params.response)
        trace_config_ctx.correlator.on_redirect(
            _response_info(trace_config_ctx, params.response)
        )
        trace_config_ctx.redirects += 1
        trace_config_ctx.body_sent = 0

    async def on_request_end(
        unused_session: aiohttp.ClientSession,
        trace_config_ctx: _TraceConfigContext,
        params: aiohttp.TraceRequestEndParams,
    ):
        _report_connection(trace_config_ctx, params.response)
        text = None
        if params.response.status == SENTINEL_STATUS:
            text = await _sentinel_text(params.response)
        trace_config_ctx.correlator.on_response(
            _response_info(trace_config_ctx, params.response, text)
        )

    async def on_request_exception(
        unused_session: aiohttp.ClientSession,
        trace_config_ctx: _TraceConfigContext,
        params: aiohttp.TraceRequestExceptionParams,
    ):
        if isinstance(params.exception, asyncio.CancelledError):
            trace_config_ctx.correlator.on_cancel(trace_config_ctx.request)
        else:
            trace_config_ctx.correlator.on_error(
                trace_config_ctx.request, params.exception
            )

    trace_config = aiohttp.TraceConfig(
        trace_config_ctx_factory=functools.partial(
            _TraceConfigContext, correlator
        )
    )

    trace_config.on_request_start.append(on_request_start)
    trace_config.on_request_headers_sent.append(on_request_headers_sent)
    trace_config.on_request_chunk_sent.append(on_request_chunk_sent)
    trace_config.on_request_redirect.append(on_request_redirect)
    trace_config.on_request_end.append(on_request_end)
    trace_config.on_request_exception.append(on_request_exception)

    return trace_config


def _instrument(
    tracer_provider: TracerProvider = None,
    request_headers: _HeaderNamesT = None,
    response_headers: _HeaderNamesT = None,
    sensitive_headers: _HeaderNamesT = None,
    excluded_urls: typing.Optional[ExcludeList] = None,
    request_hook: _RequestHookT = None,
    response_hook: _ResponseHookT = None,
):
    """Enables tracing of all ClientSessions

    When a ClientSession gets created a TraceConfig is automatically added to
    the session's trace_configs.
    """

    # pylint:disable=unused-argument
    def instrumented_init(wrapped, instance, args, kwargs):
        if not is_instrumentation_enabled():
            return wrapped(*args, **kwargs)

        client_trace_configs = list(kwargs.get("trace_configs") or [])

        trace_config = create_trace_config(
            request_headers=request_headers,
            response_headers=response_headers,
            sensitive_headers=sensitive_headers,
            excluded_urls=excluded_urls,
            request_hook=request_hook,
            response_hook=response_hook,
            tracer_provider=tracer_provider,
        )
        trace_config._is_instrumented_by_opentelemetry = True
        client_trace_configs.append(trace_config)

        kwargs["trace_configs"] = client_trace_configs
        return wrapped(*args, **kwargs)

    wrapt.wrap_function_wrapper(
        aiohttp.ClientSession, "__init__", instrumented_init
    )


def _uninstrument():
    """Disables instrumenting for all newly created ClientSessions"""
    unwrap(aiohttp.ClientSession, "__init__")


def _uninstrument_session(client_session: aiohttp.ClientSession):
    """Disables instrumentation for the given ClientSession"""
    # pylint: disable=protected-access
    trace_configs = client_session._trace_configs
    client_session._trace_configs = [
        trace_config
        for trace_config in trace_configs
        if not hasattr(trace_config, "_is_instrumented_by_opentelemetry")
    ]


class AsyncHttpClientInstrumentor(BaseInstrumentor):
    """An instrumentor for aiohttp client sessions

    See `BaseInstrumentor`
    """

    def instrumentation_dependencies(self) -> Collection[str]:
        return _instruments

    def _instrument(self, **kwargs):
        """Instruments aiohttp ClientSession

        Args:
            **kwargs: Optional arguments
                ``tracer_provider``: a TracerProvider, defaults to global
                ``request_headers``: request header names captured as span attributes
                ``response_headers``: response header names captured as span attributes
                ``sensitive_headers``: captured header names whose values are redacted
                ``excluded_urls``: comma delimited regexes of URLs that are not traced
                ``request_hook``: An optional callback that is invoked right after a span is created.
                ``response_hook``: An optional callback which is invoked right before the span ends on a response.
        """
        excluded_urls = kwargs.get("excluded_urls")
        _instrument(
            tracer_provider=kwargs.get("tracer_provider"),
            request_headers=kwargs.get("request_headers"),
            response_headers=kwargs.get("response_headers"),
            sensitive_headers=kwargs.get("sensitive_headers"),
            excluded_urls=(
                _excluded_urls_from_env
                if excluded_urls is None
                else parse_excluded_urls(excluded_urls)
            ),
            request_hook=kwargs.get("request_hook"),
            response_hook=kwargs.get("response_hook"),
        )

    def _uninstrument(self, **kwargs):
        _uninstrument()

    @staticmethod
    def uninstrument_session(client_session: aiohttp.ClientSession):
        """Disables instrumentation for the given session"""
        _uninstrument_session(client_session)
