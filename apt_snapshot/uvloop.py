# SPDX-License-Identifer: GPL-3.0-or-later

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

_T = TypeVar("_T")

try:
    import uvloop

    def run(main: Coroutine[Any, Any, _T]) -> _T:
        return uvloop.run(main)

    UVLOOP_AVAILABLE = True

except ImportError:
    UVLOOP_AVAILABLE = False  # type: ignore

    def run(main: Coroutine[Any, Any, _T]) -> _T:  # type: ignore
        return asyncio.run(main)
