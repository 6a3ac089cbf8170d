"""Cross-platform utilities for launching the system browser."""

import asyncio
import logging
import subprocess
import sys
import webbrowser

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"
IS_MACOS = sys.platform == "darwin"

# Keeps launcher processes referenced until they exit
_launcher_tasks: set[asyncio.Task[int]] = set()


def get_browser_command(url: str, platform: str | None = None) -> list[str]:
    """Build the argument list that opens ``url`` in the default browser.

    The URL is always passed as a single argument and never goes through
    a shell, so query strings containing ``&`` or quotes are safe.

    Args:
        url: The URL to open
        platform: Override for ``sys.platform`` (used in tests)

    Returns:
        Command and arguments for ``create_subprocess_exec``
    """
    platform = platform or sys.platform

    if platform == "darwin":
        return ["open", url]
    if platform == "win32":
        # `start` is a cmd.exe builtin, rundll32 opens URLs without a shell
        return ["rundll32", "url.dll,FileProtocolHandler", url]
    return ["xdg-open", url]


async def launch_browser(url: str) -> bool:
    """Open a URL in the system browser.

    Spawns the platform's "open URL" command. If the command is missing
    or cannot be started, falls back to the ``webbrowser`` module.

    Returns:
        True if a launcher was started, False otherwise
    """
    command = get_browser_command(url)

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"Browser command {command[0]!r} failed: {e}")
    else:
        # Some launchers block until the browser exits, so don't await here
        task = asyncio.create_task(process.wait())
        _launcher_tasks.add(task)
        task.add_done_callback(_launcher_tasks.discard)
        logger.debug(f"Launched browser with {command[0]!r}")
        return True

    try:
        return webbrowser.open(url)
    except webbrowser.Error as e:
        logger.warning(f"Could not open browser: {e}")
        return False
