"""Prompt templates shipped in ``vibey/instructions/``.

A same-named file under ``~/.vibey/instructions/`` takes precedence, so the
system prompt and the max-turns reflection can be tuned per user.
"""

from pathlib import Path

SHIPPED_DIR = Path(__file__).resolve().parent / "instructions"
PERSONAL_DIR = Path("~/.vibey/instructions").expanduser()


class _KeepUnknown(dict):
    """``format_map`` mapping that renders unknown fields back as ``{field}``."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Look up templates (personal override first) and fill their fields."""

    def __init__(self, base_dir: Path | str | None = None, personal_dir: Path | str | None = None):
        self.search_path = [
            Path(personal_dir).expanduser() if personal_dir is not None else PERSONAL_DIR,
            Path(base_dir).expanduser() if base_dir is not None else SHIPPED_DIR,
        ]
        self._loaded: dict[str, str] = {}

    def load(self, template_name: str) -> str:
        """Return the stripped template text.

        Raises:
            FileNotFoundError if no directory on the search path has it
        """
        if template_name not in self._loaded:
            found = next((d / template_name for d in self.search_path if (d / template_name).is_file()), None)
            if found is None:
                raise FileNotFoundError(f"Instruction template not found: {template_name}")
            self._loaded[template_name] = found.read_text(encoding="utf-8").strip()
        return self._loaded[template_name]

    def render(self, template_name: str, **fields: object) -> str:
        """Substitute ``{field}`` placeholders; ``{{`` and ``}}`` are literal braces."""
        values = _KeepUnknown({key: str(value) for key, value in fields.items()})
        return self.load(template_name).format_map(values)
