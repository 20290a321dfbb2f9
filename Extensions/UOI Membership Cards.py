import io
import logging
from typing import List, Optional

import aiohttp
import discord
from discord import app_commands
from discord.ext import commands

from audit_log import AuditChannel, WebhookAuditSink
from card_renderer import CardRenderer, CardTemplate
from config import Settings
from member_store import MemberStore, open_store
from members import ErrorKind, MemberStatus, MembershipRecord
from registry import (
    DeleteRequest,
    ListRequest,
    LookupRequest,
    MemberRegistry,
    RegisterRequest,
    RenderCardRequest,
    Result,
    UpdateRoleRequest,
    UpdateStatusRequest,
)

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 2000
CARD_FILENAME = "uoi-card.png"


def chunk_lines(lines: List[str], limit: int = MESSAGE_LIMIT - 8) -> List[str]:
    """Group lines into blocks that fit in one message (code fence included)."""
    chunks = []
    current = ""
    for line in lines:
        line = line[:limit]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class MembershipCards(commands.Cog):
    def __init__(self, bot, settings: Optional[Settings] = None, store: Optional[MemberStore] = None):
        self.bot = bot
        self.settings = settings or getattr(bot, "settings", None) or Settings.from_env()
        self.store = store or open_store(self.settings)

        self.audit = AuditChannel(self._send_to_log_channel)
        if self.settings.audit_webhook_url:
            self.audit.add_sink(WebhookAuditSink(self.settings.audit_webhook_url))

        template = CardTemplate(title=self.settings.card_title, subtitle=self.settings.card_subtitle)
        self.registry = MemberRegistry(
            self.store,
            renderer=CardRenderer(template),
            audit=self.audit,
            avatar_timeout=self.settings.avatar_timeout_seconds,
        )

    async def cog_load(self):
        await self.store.initialize()
        logger.info(f"Membership registry ready ({type(self.store).__name__})")

    async def cog_unload(self):
        await self.audit.drain()

    async def _send_to_log_channel(self, message: str) -> None:
        if self.settings.log_channel_id is None:
            return
        channel = self.bot.get_channel(self.settings.log_channel_id)
        if channel is None:
            logger.debug(f"Log channel {self.settings.log_channel_id} is not cached, skipping audit message")
            return
        await channel.send(f"📘 {message}")

    def _is_admin(self, interaction: discord.Interaction) -> bool:
        user = interaction.user
        if self.settings.admin_role_id is not None:
            return any(role.id == self.settings.admin_role_id for role in getattr(user, "roles", []))
        permissions = getattr(user, "guild_permissions", None)
        return bool(permissions and permissions.administrator)

    async def _download_avatar(self, url: str) -> bytes:
        timeout = aiohttp.ClientTimeout(total=self.settings.avatar_timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.read()

    async def _send_failure(self, interaction: discord.Interaction, result: Result) -> None:
        if result.error is ErrorKind.AUTHORIZATION:
            text = "❌ Admin only."
        elif result.error is ErrorKind.NOT_FOUND:
            text = "❌ Not found."
        else:
            text = f"❌ {result.message}"
        await interaction.followup.send(text)

    def _member_embed(self, record: MembershipRecord) -> discord.Embed:
        accent = self.registry.renderer.template.status_color(record.status)
        embed = discord.Embed(
            title=f"🪪 {record.name}",
            description=f"UOI member **{record.id}**",
            color=discord.Color.from_rgb(*accent)
        )
        embed.add_field(name="Role", value=record.role, inline=True)
        embed.add_field(name="Status", value=record.status.value, inline=True)
        embed.add_field(name="Issued", value=record.issued_on, inline=True)
        if record.owner_ref:
            embed.add_field(name="Account", value=f"<@{record.owner_ref}>", inline=True)
        embed.set_footer(text=f"Internal Ref: {record.internal_id}")
        return embed

    @app_commands.command(name="register", description="Register a new UOI member")
    @app_commands.describe(
        name="Member full name",
        role="Member role",
        member="Discord account the card belongs to (an existing card keeps its name and ID)",
    )
    async def register_command(self, interaction: discord.Interaction, name: str, role: str,
                               member: Optional[discord.Member] = None):
        await interaction.response.defer()
        result = await self.registry.handle(RegisterRequest(
            requester_is_admin=self._is_admin(interaction),
            name=name,
            role=role,
            owner_ref=str(member.id) if member is not None else None,
        ))
        if not result.is_ok:
            return await self._send_failure(interaction, result)
        await interaction.followup.send(f"✅ Registered.\nID: {result.ok.id}")

    @app_commands.command(name="verify", description="Verify a UOI ID")
    @app_commands.rename(member_id="id")
    @app_commands.describe(member_id="Member ID")
    async def verify_command(self, interaction: discord.Interaction, member_id: str):
        await interaction.response.defer()
        result = await self.registry.handle(LookupRequest(member_id=member_id))
        if not result.is_ok:
            return await self._send_failure(interaction, result)
        m = result.ok
        await interaction.followup.send(f"**Name:** {m.name}\n**Role:** {m.role}\n**Status:** {m.status.value}")

    @app_commands.command(name="lookup", description="Lookup member by ID")
    @app_commands.rename(member_id="id")
    @app_commands.describe(member_id="Member ID")
    async def lookup_command(self, interaction: discord.Interaction, member_id: str):
        await interaction.response.defer()
        result = await self.registry.handle(LookupRequest(member_id=member_id))
        if not result.is_ok:
            return await self._send_failure(interaction, result)
        await interaction.followup.send(embed=self._member_embed(result.ok))

    @app_commands.command(name="card", description="Generate ID card")
    @app_commands.rename(member_id="id")
    @app_commands.describe(member_id="Member ID")
    async def card_command(self, interaction: discord.Interaction, member_id: str):
        await interaction.response.defer()
        avatar_url = interaction.user.display_avatar.replace(format="png", size=512).url
        result = await self.registry.handle(RenderCardRequest(
            member_id=member_id,
            avatar_fetcher=lambda: self._download_avatar(avatar_url),
        ))
        if not result.is_ok:
            return await self._send_failure(interaction, result)
        await interaction.followup.send(file=discord.File(io.BytesIO(result.ok), filename=CARD_FILENAME))

    @app_commands.command(name="setstatus", description="Change member status")
    @app_commands.rename(member_id="id")
    @app_commands.describe(member_id="Member ID", status="New status (ACTIVE / SUSPENDED / REVOKED)")
    async def setstatus_command(self, interaction: discord.Interaction, member_id: str, status: str):
        await interaction.response.defer()
        result = await self.registry.handle(UpdateStatusRequest(
            requester_is_admin=self._is_admin(interaction),
            member_id=member_id,
            status=status,
        ))
        if not result.is_ok:
            return await self._send_failure(interaction, result)
        await interaction.followup.send("✅ Status updated.")

    @setstatus_command.autocomplete("status")
    async def status_autocomplete(self, interaction: discord.Interaction, current: str):
        return [
            app_commands.Choice(name=s.value, value=s.value)
            for s in MemberStatus
            if current.strip().upper() in s.value
        ]

    @app_commands.command(name="setrole", description="Change member role")
    @app_commands.rename(member_id="id")
    @app_commands.describe(member_id="Member ID", role="New role")
    async def setrole_command(self, interaction: discord.Interaction, member_id: str, role: str):
        await interaction.response.defer()
        result = await self.registry.handle(UpdateRoleRequest(
            requester_is_admin=self._is_admin(interaction),
            member_id=member_id,
            role=role,
        ))
        if not result.is_ok:
            return await self._send_failure(interaction, result)
        await interaction.followup.send("✅ Role updated.")

    @app_commands.command(name="delete", description="Delete a member")
    @app_commands.rename(member_id="id")
    @app_commands.describe(member_id="Member ID")
    async def delete_command(self, interaction: discord.Interaction, member_id: str):
        await interaction.response.defer()
        result = await self.registry.handle(DeleteRequest(
            requester_is_admin=self._is_admin(interaction),
            member_id=member_id,
        ))
        if not result.is_ok:
            return await self._send_failure(interaction, result)
        await interaction.followup.send("🗑 Member deleted.")

    @app_commands.command(name="list", description="List all members")
    async def list_command(self, interaction: discord.Interaction):
        await interaction.response.defer()
        result = await self.registry.handle(ListRequest(requester_is_admin=self._is_admin(interaction)))
        if not result.is_ok:
            return await self._send_failure(interaction, result)

        records = sorted(result.ok, key=lambda r: r.id)
        if not records:
            await interaction.followup.send("No members.")
            return

        lines = [f"{r.id} | {r.name} | {r.status.value}" for r in records]
        for chunk in chunk_lines(lines):
            await interaction.followup.send(f"```\n{chunk}\n```")

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        command_name = interaction.command.name if interaction.command else "unknown"
        logger.error(f"/{command_name} failed: {error}", exc_info=error)
        try:
            if interaction.response.is_done():
                await interaction.followup.send("❌ Something went wrong. Please try again later.")
            else:
                await interaction.response.send_message("❌ Something went wrong. Please try again later.")
        except discord.HTTPException as e:
            logger.warning(f"Could not report the failure of /{command_name}: {e}")


async def setup(bot):
    await bot.add_cog(MembershipCards(bot))
