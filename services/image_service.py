"""
Image prompt styling and generation
"""

from typing import Optional

from providers.image_provider import ImageProvider

IMAGE_STYLE_PREFIX = (
    "8位复古的像素艺术，SNES时代风格，边缘锐利无抗锯齿，标志性的有限色彩效果，复古游戏画面，"
)


def apply_image_style(prompt: str, prefix: str = IMAGE_STYLE_PREFIX) -> str:
    """Prefix the pixel-art style unless the prompt already starts with it"""
    trimmed = prompt.strip()
    if not trimmed:
        return prefix.strip()
    if trimmed.lower().startswith(prefix.strip().lower()):
        return trimmed
    return f"{prefix}{trimmed}"


class ImageGenerator:
    def __init__(self, provider: ImageProvider):
        self.provider = provider

    async def generate(self, prompt: str, request_id: Optional[str] = None) -> str:
        # styling is idempotent, so an already styled prompt passes through unchanged
        return await self.provider.generate(apply_image_style(prompt), request_id)
