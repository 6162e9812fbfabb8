"""User-Agent header for outbound provider requests.

Format: ``modelgate/{version} ({source})``, e.g. ``modelgate/0.3.0 (cli)``.
The source comes from ``MODELGATE_CLIENT_SOURCE`` and defaults to ``library``.
"""

from __future__ import annotations

import os
from typing import Literal, Optional, get_args

from modelgate import __version__

UserAgentSource = Literal["cli", "editor", "library"]

CLIENT_SOURCE_ENV = "MODELGATE_CLIENT_SOURCE"


def client_source() -> UserAgentSource:
    source = os.environ.get(CLIENT_SOURCE_ENV, "").strip().lower()
    return source if source in get_args(UserAgentSource) else "library"  # type: ignore[return-value]


def build_user_agent(source: Optional[UserAgentSource] = None) -> str:
    return f"modelgate/{__version__} ({source or client_source()})"
