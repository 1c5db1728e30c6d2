from __future__ import annotations

from typing import Any

import msgspec


class Update(msgspec.Struct, kw_only=True):
    update_id: int
    message: dict[str, Any] | None = None
    edited_message: dict[str, Any] | None = None
    channel_post: dict[str, Any] | None = None
    callback_query: dict[str, Any] | None = None

    @property
    def kind(self) -> str | None:
        for name in ("message", "edited_message", "channel_post", "callback_query"):
            if getattr(self, name) is not None:
                return name
        return None
