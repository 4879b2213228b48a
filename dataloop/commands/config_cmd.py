"""dataloop config command.

Shows the effective global configuration.
"""

from typing import Optional

from rich.console import Console
from rich.table import Table

from dataloop.config import GlobalConfig, config_path, get_global_config

__all__ = ["cmd_config"]

SECTIONS = {
    "Model": ("model", "api_base_url", "api_key_env", "request_timeout_s"),
    "Follow-ups": ("max_followup_depth", "auto_followup", "max_consecutive_failures"),
    "Loop detection": ("loop_history_size", "loop_ceiling"),
    "Approval": ("min_approval_ms",),
    "Fingerprints": ("fingerprint_full_length", "fingerprint_edge_chars"),
    "Results": ("stored_result_rows", "prompt_result_rows", "max_error_code_chars"),
    "Sandbox": ("execution_timeout_s",),
    "Transcript": ("max_history_turns", "store_dir"),
}

EXAMPLE = """[default]
model = "anthropic/claude-sonnet-4"
max_followup_depth = 5

[profiles.local]
model = "qwen2.5-coder"
api_base_url = "http://localhost:11434/v1"

# DATALOOP_PROFILE=local selects [profiles.local]"""


def _format_value(key: str, value) -> str:
    if key == "max_followup_depth" and value == 0:
        return "0 (unlimited)"
    if key == "model" and not value:
        return "[red](not set)[/red]"
    return str(value)


def cmd_config(gcfg: Optional[GlobalConfig] = None, console: Optional[Console] = None) -> int:
    """Show global configuration.

    Returns:
        Exit code (0 for success).
    """
    gcfg = gcfg or get_global_config()
    console = console or Console()

    path = config_path()
    if path.exists():
        console.print(f"[green]✓[/green] {path}")
    else:
        console.print(f"[yellow]○[/yellow] {path} (using defaults)")
    console.print(f"Profile: [green]{gcfg.profile}[/green]")
    key_state = "set" if gcfg.api_key() else "[yellow]not set[/yellow]"
    console.print(f"API key ({gcfg.api_key_env}): {key_state}")

    table = Table(show_header=False, box=None)
    values = gcfg.to_dict()
    for title, keys in SECTIONS.items():
        table.add_row(f"[cyan]{title}[/cyan]", "")
        for key in keys:
            table.add_row(f"  {key}", _format_value(key, values[key]))
    console.print(table)

    console.print("[dim]Example config.toml:[/dim]")
    console.print(EXAMPLE, markup=False, style="dim")
    return 0
