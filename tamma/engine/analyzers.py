"""
Static analyzers as a closed, capability-tagged variant set.

Each ``Analyzer`` member carries what is needed to decide whether it applies
to a workspace (its binary and the project files it recognizes) and how to
run it. ``probe_analyzers`` is called once at startup; the static-analysis
gate then runs exactly the probed variants, with no runtime discovery.

Example:
    >>> analyzers = probe_analyzers("/srv/checkout")
    >>> [a.value for a in analyzers]
    ['pylint', 'ruff']
"""

import shutil
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AnalyzerSpec:
    """How to detect and run one analyzer."""

    binary: str
    command: tuple[str, ...]
    markers: tuple[str, ...]
    capabilities: frozenset[str]


class Analyzer(str, Enum):
    """Supported static analyzers."""

    ESLINT = "eslint"
    PYLINT = "pylint"
    RUFF = "ruff"
    RUBOCOP = "rubocop"

    def __str__(self) -> str:
        return self.value

    @property
    def spec(self) -> AnalyzerSpec:
        return ANALYZER_SPECS[self]

    @property
    def command(self) -> tuple[str, ...]:
        return self.spec.command


ANALYZER_SPECS: dict[Analyzer, AnalyzerSpec] = {
    Analyzer.ESLINT: AnalyzerSpec(
        binary="eslint",
        command=("eslint", "--max-warnings=0", "."),
        markers=(
            "eslint.config.js",
            "eslint.config.mjs",
            ".eslintrc",
            ".eslintrc.js",
            ".eslintrc.json",
            "package.json",
        ),
        capabilities=frozenset({"javascript", "typescript"}),
    ),
    Analyzer.PYLINT: AnalyzerSpec(
        binary="pylint",
        command=("pylint", "--errors-only", "--recursive=y", "."),
        markers=(".pylintrc", "pylintrc", "pyproject.toml", "setup.cfg", "setup.py"),
        capabilities=frozenset({"python"}),
    ),
    Analyzer.RUFF: AnalyzerSpec(
        binary="ruff",
        command=("ruff", "check", "."),
        markers=("ruff.toml", ".ruff.toml", "pyproject.toml"),
        capabilities=frozenset({"python"}),
    ),
    Analyzer.RUBOCOP: AnalyzerSpec(
        binary="rubocop",
        command=("rubocop", "--format", "simple"),
        markers=(".rubocop.yml", "Gemfile"),
        capabilities=frozenset({"ruby"}),
    ),
}


def probe_analyzers(
    workspace: str | Path,
    only: list[str] | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> list[Analyzer]:
    """Select the analyzers that apply to a workspace.

    An analyzer applies when its binary is on PATH and the workspace
    contains one of its marker files.

    Args:
        workspace: Checkout directory to inspect
        only: Restrict the candidates to these analyzer names
        which: Binary lookup, ``shutil.which`` by default

    Returns:
        Applicable analyzers in declaration order

    Raises:
        ValueError: If ``only`` names an unknown analyzer
    """
    root = Path(workspace)
    candidates = list(Analyzer)
    if only is not None:
        candidates = [Analyzer(name) for name in only]

    selected = []
    for analyzer in candidates:
        spec = analyzer.spec
        if which(spec.binary) is None:
            log.debug("analyzer_not_installed", analyzer=analyzer.value)
            continue
        if not any((root / marker).exists() for marker in spec.markers):
            log.debug("analyzer_not_applicable", analyzer=analyzer.value, workspace=str(root))
            continue
        selected.append(analyzer)

    log.info("analyzers_probed", workspace=str(root), analyzers=[a.value for a in selected])
    return selected
