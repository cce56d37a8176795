"""Rendering settings of an image."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from utils.exceptions import DecodeError


class ChannelSettings(BaseModel):
    """Display range and color of one channel."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    min_display_range: float = Field(..., description="Lowest displayed value")
    max_display_range: float = Field(..., description="Highest displayed value")
    rgb_color: int = Field(..., description="Packed 0xRRGGBB color")

    @property
    def hex_color(self) -> str:
        return f"{(self.rgb_color >> 16) & 0xFF:02X}{(self.rgb_color >> 8) & 0xFF:02X}{self.rgb_color & 0xFF:02X}"


class ImageSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = ""
    channels: tuple[ChannelSettings, ...] = ()

    @classmethod
    def from_image_data(cls, image_data: Any) -> ImageSettings:
        """Build settings from the viewer ``image_data`` document.

        Raises:
            DecodeError: If the channels list or one of its windows is missing
        """
        if not isinstance(image_data, dict) or not isinstance(
            image_data.get("channels"), list
        ):
            raise DecodeError("'channels' array not found in image data", image_data)

        meta = image_data.get("meta")
        name = meta.get("imageName", "") if isinstance(meta, dict) else ""

        channels = []
        for channel in image_data["channels"]:
            window = channel.get("window") if isinstance(channel, dict) else None
            if not isinstance(window, dict) or "start" not in window or "end" not in window:
                raise DecodeError("Channel window not found", channel)
            try:
                color = int(channel.get("color") or "FFFFFF", 16)
                channels.append(
                    ChannelSettings(
                        name=channel.get("label") or "",
                        min_display_range=float(window["start"]),
                        max_display_range=float(window["end"]),
                        rgb_color=color,
                    )
                )
            except (TypeError, ValueError) as e:
                raise DecodeError(f"Invalid channel settings: {e}", channel) from e

        return cls(name=name or "", channels=tuple(channels))
