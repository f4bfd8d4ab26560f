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

"""Allow-listing of HTTP headers captured as span attributes.

Configured header names are treated as literal names, never as regular
expressions, so a configuration value cannot widen what gets recorded.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

REQUEST_HEADER_PREFIX = "http.request.header"
RESPONSE_HEADER_PREFIX = "http.response.header"

_REDACTED_VALUE = "[REDACTED]"


def normalise_header_name(name: str) -> str:
    return name.lower().replace("-", "_")


def _iter_header_items(headers: Any) -> Iterable[Tuple[str, str]]:
    """Yields ``(name, value)`` pairs, one per value, in header order."""
    if headers is None:
        return
    for name, value in headers.items():
        if isinstance(value, (list, tuple)):
            for item in value:
                yield name, item
        else:
            yield name, value


class HeaderAllowlist:
    """A single case-insensitive matcher built from a list of header names.

    An empty list compiles to a matcher that matches nothing.
    """

    def __init__(self, names: Optional[Iterable[str]] = None):
        names = [name.strip() for name in names or () if name.strip()]
        self._names = tuple(names)
        if names:
            alternation = "|".join(
                re.escape(name.replace("-", "_")) for name in names
            )
            self._pattern = re.compile(
                f"(?:{alternation})", re.IGNORECASE
            )
        else:
            self._pattern = None

    def __bool__(self) -> bool:
        return self._pattern is not None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self._names)!r})"

    def matches(self, name: str) -> bool:
        if self._pattern is None:
            return False
        return self._pattern.fullmatch(name.replace("-", "_")) is not None

    def collect(
        self,
        headers: Any,
        prefix: str,
        sensitive: Optional["HeaderAllowlist"] = None,
    ) -> Dict[str, Tuple[str, ...]]:
        """Returns one attribute per allow-listed header.

        Each attribute holds every value of its header, in order. Values of
        headers also matched by ``sensitive`` are replaced with a placeholder.
        """
        if self._pattern is None:
            return {}

        collected: Dict[str, List[str]] = {}
        for name, value in _iter_header_items(headers):
            normalised = normalise_header_name(str(name))
            if not self.matches(normalised):
                continue
            if sensitive is not None and sensitive.matches(normalised):
                value = _REDACTED_VALUE
            collected.setdefault(f"{prefix}.{normalised}", []).append(
                str(value)
            )

        return {key: tuple(values) for key, values in collected.items()}
