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

import functools
import weakref
from typing import Any, Dict, Optional, Tuple

from opentelemetry.trace import Span


class SpanRegistry:
    """Associates in-flight requests with their span.

    Entries are keyed by the identity of the request object and hold only a
    weak reference to it: once a request is garbage collected its entry is
    dropped, whether or not `remove` was called. Requests therefore have to
    support weak references.
    """

    def __init__(self):
        self._entries: Dict[int, Tuple[weakref.ref, Span]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _discard(self, key: int, ref: weakref.ref) -> None:
        # the id may already belong to a newer request
        entry = self._entries.get(key)
        if entry is not None and entry[0] is ref:
            del self._entries[key]

    def put(self, request: Any, span: Span) -> None:
        key = id(request)
        ref = weakref.ref(request, functools.partial(self._discard, key))
        self._entries[key] = (ref, span)

    def get(self, request: Any) -> Optional[Span]:
        entry = self._entries.get(id(request))
        if entry is None or entry[0]() is not request:
            return None
        return entry[1]

    def remove(self, request: Any) -> Optional[Span]:
        """Drops the entry for ``request`` and returns its span, if any.

        Only one of several callers removing the same request gets the span.
        """
        key = id(request)
        entry = self._entries.get(key)
        if entry is None or entry[0]() is not request:
            return None
        if self._entries.pop(key, None) is not entry:
            return None
        return entry[1]
