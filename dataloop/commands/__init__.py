"""dataloop CLI commands package.

Each command module exports its main command function.
"""

from dataloop.commands.chat import cmd_chat
from dataloop.commands.config_cmd import cmd_config

__all__: list[str] = [
    "cmd_chat",
    "cmd_config",
]
