import sys
import asyncio
import importlib.util
import traceback
from pathlib import Path

import discord
from discord.ext import commands

import logging
import colorama
from colorama import Fore, Style, Back

colorama.init(autoreset=True)

DEFAULT_EXTENSIONS_DIR = "Extensions"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


class ColoredFormatter(logging.Formatter):
    LEVEL_COLORS = {
        logging.DEBUG: Fore.CYAN,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Back.RED + Fore.WHITE,
    }

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno, Fore.GREEN)
        formatter = logging.Formatter(color + LOG_FORMAT + Style.RESET_ALL, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(ColoredFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # discord.py is chatty at INFO
    logging.getLogger("discord").setLevel(logging.WARNING)


logger = logging.getLogger("extension_loader")


def _module_name(stem: str) -> str:
    base = "".join(ch if ch.isalnum() or ch == "_" else "_" for ch in stem.replace(" ", "_"))
    return f"Extensions.{base}"


class ExtensionLoader(commands.Cog):
    """Imports every ``*.py`` file under Extensions/ and calls its ``setup(bot)``."""

    def __init__(self, bot, extensions_dir=None, auto_load: bool = True):
        self.bot = bot
        # relative paths resolve against the working directory the bot is started from
        self.extensions_dir = Path(extensions_dir or DEFAULT_EXTENSIONS_DIR).resolve()
        self.auto_load = auto_load
        self.loaded_extensions: set[str] = set()

    @staticmethod
    def _name_variants(raw: str) -> list[str]:
        stem = raw.strip()
        if stem.lower().endswith(".py"):
            stem = stem[:-3]
        # "UOI Membership Cards" and "UOI_Membership_Cards" name the same file
        return [stem, stem.replace("_", " "), stem.replace(" ", "_")]

    def available_extensions(self) -> list[str]:
        if not self.extensions_dir.is_dir():
            return []
        return sorted(path.name for path in self.extensions_dir.glob("*.py") if not path.name.startswith("_"))

    def _derive_file_and_module(self, raw_name: str) -> tuple[str, str, Path]:
        if not self.extensions_dir.is_dir():
            raise FileNotFoundError(f"Extensions directory '{self.extensions_dir}' does not exist.")

        for stem in self._name_variants(raw_name):
            path = self.extensions_dir / f"{stem}.py"
            if path.is_file():
                return path.name, _module_name(stem), path

        raise FileNotFoundError(f"No extension file matches '{raw_name}' in {self.extensions_dir}.")

    def _is_loaded(self, extension_name: str) -> bool:
        wanted = {f"{stem}.py" for stem in self._name_variants(extension_name)}
        return not wanted.isdisjoint(self.loaded_extensions)

    async def load_all_extensions(self) -> tuple[int, int]:
        files = self.available_extensions()
        if not files:
            logger.warning(f"No extensions found in '{self.extensions_dir}'.")
            return 0, 0

        logger.info(f"{Fore.CYAN}Loading {len(files)} extension(s) from {self.extensions_dir}")
        results = [await self.load_extension(name) for name in files]
        loaded = sum(results)
        failed = len(results) - loaded
        logger.info(f"{Fore.CYAN}Extensions ready: {Fore.GREEN}{loaded}{Fore.CYAN} loaded, {Fore.RED}{failed}{Fore.CYAN} failed")
        return loaded, failed

    async def load_extension(self, extension_name: str) -> bool:
        try:
            filename, module_name, path = self._derive_file_and_module(extension_name)
            import_spec = importlib.util.spec_from_file_location(module_name, path)
            if import_spec is None or import_spec.loader is None:
                raise ImportError(f"Cannot import {filename}")

            module = importlib.util.module_from_spec(import_spec)
            sys.modules[module_name] = module
            try:
                import_spec.loader.exec_module(module)
                setup = getattr(module, "setup", None)
                if setup is None:
                    raise AttributeError(f"{filename} does not define setup(bot)")
                if asyncio.iscoroutinefunction(setup):
                    await setup(self.bot)
                else:
                    setup(self.bot)
            except Exception:
                sys.modules.pop(module_name, None)
                raise
        except Exception as e:
            logger.error(f"{Fore.RED}✗ Could not load {extension_name}: {e}")
            logger.debug(traceback.format_exc())
            return False

        self.loaded_extensions.add(filename)
        logger.info(f"{Fore.GREEN}✓ {filename}")
        return True

    async def unload_extension(self, extension_name: str) -> bool:
        try:
            filename, module_name, _ = self._derive_file_and_module(extension_name)
        except FileNotFoundError as e:
            logger.error(f"{Fore.RED}Could not unload {extension_name}: {e}")
            return False

        owned = [name for name, cog in self.bot.cogs.items() if type(cog).__module__ == module_name]
        for cog_name in owned:
            await self.bot.remove_cog(cog_name)

        sys.modules.pop(module_name, None)
        self.loaded_extensions.discard(filename)
        logger.info(f"Unloaded {filename} ({len(owned)} cog(s) removed)")
        return True

    async def reload_extension(self, extension_name: str) -> bool:
        if self._is_loaded(extension_name) and not await self.unload_extension(extension_name):
            return False
        return await self.load_extension(extension_name)

    @commands.group(name="extension", aliases=["ext"], invoke_without_command=True)
    @commands.has_permissions(administrator=True)
    async def extension_group(self, ctx):
        p = ctx.prefix
        await ctx.send(
            "**Extension commands**\n"
            f"`{p}extension list` · `{p}extension load <name>` · `{p}extension unload <name>` · "
            f"`{p}extension reload <name>` · `{p}extension reloadall`"
        )

    @extension_group.command(name="list")
    @commands.has_permissions(administrator=True)
    async def list_extensions(self, ctx):
        available = self.available_extensions()
        if not available:
            await ctx.send("❌ No extensions found.")
            return

        embed = discord.Embed(title="🧩 Extensions", color=discord.Color.blurple())
        for filename in available:
            state = "✅ loaded" if filename in self.loaded_extensions else "⏸ not loaded"
            embed.add_field(name=filename[:-3], value=state, inline=False)
        embed.set_footer(text=f"Auto-load {'on' if self.auto_load else 'off'}")
        await ctx.send(embed=embed)

    async def _run_action(self, ctx, verb: str, extension_name: str, action, must_be_loaded: bool):
        if self._is_loaded(extension_name) != must_be_loaded:
            state = "not loaded" if must_be_loaded else "already loaded"
            await ctx.send(f"❌ `{extension_name}` is {state}.")
            return
        if await action(extension_name):
            await ctx.send(f"✅ {verb} `{extension_name}`.")
        else:
            await ctx.send(f"❌ Could not {verb.lower()[:-2]} `{extension_name}`, see the bot log.")

    @extension_group.command(name="load")
    @commands.has_permissions(administrator=True)
    async def load_extension_cmd(self, ctx, *, extension_name: str):
        await self._run_action(ctx, "Loaded", extension_name, self.load_extension, must_be_loaded=False)

    @extension_group.command(name="unload")
    @commands.has_permissions(administrator=True)
    async def unload_extension_cmd(self, ctx, *, extension_name: str):
        await self._run_action(ctx, "Unloaded", extension_name, self.unload_extension, must_be_loaded=True)

    @extension_group.command(name="reload")
    @commands.has_permissions(administrator=True)
    async def reload_extension_cmd(self, ctx, *, extension_name: str):
        await self._run_action(ctx, "Reloaded", extension_name, self.reload_extension, must_be_loaded=True)

    @extension_group.command(name="reloadall")
    @commands.has_permissions(administrator=True)
    async def reload_all_extensions(self, ctx):
        names = sorted(self.loaded_extensions)
        if not names:
            await ctx.send("❌ Nothing is loaded.")
            return

        results = [await self.reload_extension(name) for name in names]
        await ctx.send(f"🔄 Reloaded {sum(results)}/{len(results)} extension(s).")
