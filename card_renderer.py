import io
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Sequence, Tuple

from PIL import Image, ImageChops, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from members import MemberStatus, MembershipRecord, RenderError, ValidationError

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]

REGULAR_FONTS = ("arial.ttf", "Arial.ttf", "DejaVuSans.ttf", "LiberationSans-Regular.ttf")
BOLD_FONTS = ("arialbd.ttf", "Arial Bold.ttf", "DejaVuSans-Bold.ttf", "LiberationSans-Bold.ttf")
MONO_FONTS = ("cour.ttf", "Courier New.ttf", "DejaVuSansMono.ttf", "LiberationMono-Regular.ttf")

REQUIRED_FIELDS = ("id", "name", "role", "issued_on", "internal_id")


def hex_to_rgb(hex_color: str) -> Color:
    hex_color = hex_color.lstrip('#')
    return tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))


@lru_cache(maxsize=32)
def load_font(style: str, size: int):
    candidates = {"bold": BOLD_FONTS, "mono": MONO_FONTS}.get(style, REGULAR_FONTS)
    for name in candidates:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    logger.debug(f"No TrueType font found for style '{style}', using Pillow's built-in font")
    return ImageFont.load_default(size=size)


@dataclass(frozen=True)
class CardTemplate:
    """
    Fixed 900x550 identity card layout.

    Text positions are the top-left corner of each line.
    """
    width: int = 900
    height: int = 550
    background: str = "#0f172a"

    band_height: int = 12
    band_colors: Sequence[str] = ("#ff9933", "#ffffff", "#138808")

    title: str = "UNION OF INDIANS"
    subtitle: str = "OFFICIAL IDENTIFICATION CARD"

    margin_x: int = 50
    avatar_x: int = 600
    avatar_y: int = 150
    avatar_size: int = 220
    avatar_ring_width: int = 5

    title_y: int = 46
    subtitle_y: int = 98
    name_y: int = 160
    id_y: int = 230
    role_y: int = 294
    status_y: int = 334
    issued_y: int = 400
    internal_y: int = 440

    text_color: str = "#ffffff"
    id_color: str = "#fbbf24"
    detail_color: str = "#cbd5e1"
    muted_color: str = "#94a3b8"

    status_colors: Dict[str, str] = field(default_factory=lambda: {
        MemberStatus.ACTIVE.value: "#22c55e",
        MemberStatus.SUSPENDED.value: "#f59e0b",
        MemberStatus.REVOKED.value: "#ef4444",
    })

    def status_color(self, status: MemberStatus) -> Color:
        return hex_to_rgb(self.status_colors.get(status.value, self.detail_color))


class CardRenderer:
    def __init__(self, template: Optional[CardTemplate] = None):
        self.template = template or CardTemplate()

    def render(self, record: MembershipRecord, avatar_bytes: Optional[bytes] = None) -> bytes:
        """
        Draw the card for ``record`` and return it as PNG bytes.

        Avatar bytes that cannot be decoded are ignored and the avatar
        circle is left empty. A record missing a required field raises
        RenderError.
        """
        status = self._check_record(record)
        avatar = self._decode_avatar(avatar_bytes) if avatar_bytes else None

        try:
            img = self._draw_card(record, status, avatar)
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
        except (OSError, ValueError, TypeError) as e:
            raise RenderError(f"Could not render card for member {record.id}: {e}") from e
        return buffer.getvalue()

    def _check_record(self, record) -> MemberStatus:
        if record is None:
            raise RenderError("No member record to render.")
        for name in REQUIRED_FIELDS:
            value = getattr(record, name, None)
            if value is None or not str(value).strip():
                raise RenderError(f"Member record is missing '{name}'.")
        try:
            return MemberStatus.parse(getattr(record, "status", None))
        except ValidationError as e:
            raise RenderError(str(e)) from e

    def _decode_avatar(self, avatar_bytes) -> Optional[Image.Image]:
        try:
            with Image.open(io.BytesIO(avatar_bytes)) as raw:
                return raw.convert("RGBA")
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable avatar image: {e}")
            return None

    def create_gradient(self, width: int, height: int, colors: Sequence[Color]) -> Image.Image:
        gradient = Image.new("RGB", (width, height))
        draw = ImageDraw.Draw(gradient)
        if len(colors) == 1:
            colors = (colors[0], colors[0])

        segments = len(colors) - 1
        for x in range(width):
            position = x / max(width - 1, 1) * segments
            index = min(int(position), segments - 1)
            ratio = position - index
            start, end = colors[index], colors[index + 1]
            r = int(start[0] * (1 - ratio) + end[0] * ratio)
            g = int(start[1] * (1 - ratio) + end[1] * ratio)
            b = int(start[2] * (1 - ratio) + end[2] * ratio)
            draw.line([(x, 0), (x, height)], fill=(r, g, b))

        return gradient

    def create_circular_avatar(self, avatar: Image.Image, size: int) -> Image.Image:
        avatar = ImageOps.fit(avatar.convert("RGBA"), (size, size), Image.Resampling.LANCZOS)

        mask = Image.new("L", (size, size), 0)
        mask_draw = ImageDraw.Draw(mask)
        mask_draw.ellipse((0, 0, size - 1, size - 1), fill=255)

        # keep the avatar's own transparency inside the circle
        avatar.putalpha(ImageChops.multiply(avatar.getchannel("A"), mask))
        return avatar

    def _fit_text(self, draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> str:
        if draw.textlength(text, font=font) <= max_width:
            return text
        while text and draw.textlength(text + "...", font=font) > max_width:
            text = text[:-1]
        return text.rstrip() + "..."

    def _draw_card(self, record: MembershipRecord, status: MemberStatus, avatar: Optional[Image.Image]) -> Image.Image:
        t = self.template
        img = Image.new("RGB", (t.width, t.height), hex_to_rgb(t.background))

        band = self.create_gradient(t.width, t.band_height, [hex_to_rgb(c) for c in t.band_colors])
        img.paste(band, (0, 0))

        draw = ImageDraw.Draw(img)
        text_width = t.avatar_x - t.margin_x - 20
        white = hex_to_rgb(t.text_color)
        detail = hex_to_rgb(t.detail_color)
        muted = hex_to_rgb(t.muted_color)
        accent = t.status_color(status)

        draw.text((t.margin_x, t.title_y), t.title, fill=white, font=load_font("bold", 36))
        draw.text((t.margin_x, t.subtitle_y), t.subtitle, fill=white, font=load_font("regular", 24))

        if avatar is not None:
            circle = self.create_circular_avatar(avatar, t.avatar_size)
            img.paste(circle, (t.avatar_x, t.avatar_y), circle)
            ring = t.avatar_ring_width
            draw.ellipse(
                [
                    (t.avatar_x - ring, t.avatar_y - ring),
                    (t.avatar_x + t.avatar_size + ring - 1, t.avatar_y + t.avatar_size + ring - 1),
                ],
                outline=accent,
                width=ring,
            )

        name_font = load_font("bold", 42)
        draw.text((t.margin_x, t.name_y), self._fit_text(draw, record.name, name_font, text_width),
                  fill=white, font=name_font)

        draw.text((t.margin_x, t.id_y), f"ID: {record.id}", fill=hex_to_rgb(t.id_color), font=load_font("mono", 32))

        info_font = load_font("regular", 28)
        draw.text((t.margin_x, t.role_y), self._fit_text(draw, f"Role: {record.role}", info_font, text_width),
                  fill=detail, font=info_font)
        draw.text((t.margin_x, t.status_y), f"Status: {status.value}", fill=accent, font=info_font)

        small_font = load_font("regular", 22)
        draw.text((t.margin_x, t.issued_y), f"Issued: {record.issued_on}", fill=muted, font=small_font)
        draw.text((t.margin_x, t.internal_y), f"Internal Ref: {record.internal_id}", fill=muted, font=small_font)

        return img
