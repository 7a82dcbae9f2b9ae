"""
Run List Engine - Ordered configuration-unit references

The run list is the literal execution order handed to the convergence tool.
Each entry names a unit (cookbook) and a category (recipe) within it:

    "app1"            -> app1, default
    "app1::lib"       -> app1, lib
    "app1::validate"  -> app1, validate

Ordering invariant (across the WHOLE list, not per unit):

    lib entries  <  default entries  <  validate entries

so a default recipe of one unit may depend on the lib recipe of another, and
the trailing validate recipes confirm the whole batch.

Default-guard:
- A unit's lib/validate entry is only surfaced if its default entry is active
  (present in the run list and backed by a recipe file). Cookbook directories
  that were copied in but never activated stay out of the run.

All operations return a new RunList; the only side input is the on-disk
recipe oracle: {config_dir}/cookbooks/{unit}/recipes/{category}.rb
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

from .errors import RunListError

logger = logging.getLogger(__name__)

LIB = "lib"
DEFAULT = "default"
VALIDATE = "validate"
CATEGORIES = (LIB, DEFAULT, VALIDATE)

RUN_LIST_KEY = "run_list"

# Accepts "unit", "unit::cat" and the legacy "recipe[unit]" / "recipe[unit::cat]"
_ENTRY_PATTERN = re.compile(r"^(?:recipe\[([\w\-]+)(?:::([\w\-]+))?\]|([\w\-]+)(?:::([\w\-]+))?)$")
_UNIT_PATTERN = re.compile(r"^[\w\-]+$")


def is_valid_unit(unit: Optional[str]) -> bool:
    return bool(unit) and _UNIT_PATTERN.match(unit) is not None


def recipe_exists(config_dir: Path, unit: str, category: str) -> bool:
    """Check {config_dir}/cookbooks/{unit}/recipes/{category}.rb exists."""
    return (Path(config_dir) / "cookbooks" / unit / "recipes" / f"{category}.rb").is_file()


@dataclass(frozen=True)
class RunListEntry:
    """One run list reference: unit + category."""
    unit: str
    category: str = DEFAULT

    @classmethod
    def parse(cls, raw: str) -> "RunListEntry":
        match = _ENTRY_PATTERN.match(raw.strip()) if isinstance(raw, str) else None
        if match is None:
            raise RunListError(f"invalid run list entry: {raw!r}")
        unit = match.group(1) or match.group(3)
        category = match.group(2) or match.group(4) or DEFAULT
        return cls(unit=unit, category=category)

    def is_unit(self, unit: str) -> bool:
        """Cookbook equality: same unit, any category."""
        return self.unit == unit

    def __str__(self) -> str:
        return self.unit if self.category == DEFAULT else f"{self.unit}::{self.category}"


class RunList:
    """Immutable ordered sequence of RunListEntry."""

    def __init__(self, entries: Iterable = ()):
        parsed = []
        for e in entries:
            parsed.append(e if isinstance(e, RunListEntry) else RunListEntry.parse(e))
        self._entries = tuple(parsed)

    # ==================== Sequence protocol ====================

    def __iter__(self) -> Iterator[RunListEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index):
        return self._entries[index]

    def __eq__(self, other) -> bool:
        if isinstance(other, RunList):
            return self._entries == other._entries
        return NotImplemented

    def __repr__(self) -> str:
        return f"RunList({self.to_strings()!r})"

    def to_strings(self) -> List[str]:
        return [str(e) for e in self._entries]

    # ==================== Queries ====================

    def units(self) -> List[str]:
        """Distinct units in first-appearance order."""
        seen = []
        for e in self._entries:
            if e.unit not in seen:
                seen.append(e.unit)
        return seen

    def contains_unit(self, unit: str) -> bool:
        return any(e.is_unit(unit) for e in self._entries)

    def has_entry(self, unit: str, category: str) -> bool:
        return RunListEntry(unit, category) in self._entries

    def of_category(self, category: str) -> List[RunListEntry]:
        return [e for e in self._entries if e.category == category]

    def non_lib_entries(self) -> List[RunListEntry]:
        return [e for e in self._entries if e.category != LIB]

    def is_category_ordered(self) -> bool:
        """True if no entry is preceded by an entry of a later category."""
        rank = {c: i for i, c in enumerate(CATEGORIES)}
        highest = 0
        for e in self._entries:
            r = rank.get(e.category, rank[DEFAULT])
            if r < highest:
                return False
            highest = r
        return True

    def _default_active(self, config_dir: Path, unit: str) -> bool:
        return self.has_entry(unit, DEFAULT) and recipe_exists(config_dir, unit, DEFAULT)

    def category_entries(
        self,
        config_dir: Path,
        category: str,
        extra_candidates: Optional[Sequence[str]] = None
    ) -> List[RunListEntry]:
        """
        Units of this run list (plus extra candidates) that have `category` active.

        A current unit qualifies if its `category` recipe exists on disk and,
        for lib/validate, its default entry is active (default-guard).
        An extra candidate not already found qualifies if its `category`
        recipe exists and, for lib/validate, its default recipe exists (it
        is about to be activated).

        Args:
            config_dir: Configuration root holding cookbooks/
            category: lib, default or validate
            extra_candidates: Units being added (may include current units)

        Returns:
            Entries in unit first-appearance order, current units first
        """
        found: List[RunListEntry] = []

        for unit in self.units():
            if not recipe_exists(config_dir, unit, category):
                continue
            if category != DEFAULT and not self._default_active(config_dir, unit):
                continue
            found.append(RunListEntry(unit, category))

        for unit in extra_candidates or ():
            entry = RunListEntry(unit, category)
            if entry in found:
                continue
            if not recipe_exists(config_dir, unit, category):
                continue
            if category != DEFAULT and not recipe_exists(config_dir, unit, DEFAULT):
                continue
            found.append(entry)

        return found

    # ==================== Mutations (return new RunList) ====================

    def merge(self, added_units: Sequence[str], config_dir: Path) -> "RunList":
        """
        Rebuild the run list grouped by category across the whole list.

        lib(current + added) ++ default(current + added) ++ validate(current)
        """
        added = list(added_units or ())
        merged = (
            self.category_entries(config_dir, LIB, added)
            + self.category_entries(config_dir, DEFAULT, added)
            + self.category_entries(config_dir, VALIDATE)
        )
        return RunList(merged)

    def insert_app(self, unit: str, config_dir: Path) -> "RunList":
        """
        Insert a single unit's entries at their category positions.

        - lib: after the leading run of lib entries (skipped if present)
        - default: after the leading run of lib+default entries (skipped if present)
        - validate: appended at the very end, if a validate recipe exists and
          the unit has no validate entry yet

        Raises:
            RunListError: If the unit has no default recipe on disk
        """
        if not is_valid_unit(unit):
            raise RunListError(f"invalid unit name: {unit!r}")
        if not recipe_exists(config_dir, unit, DEFAULT):
            raise RunListError(f"unit {unit} has no default recipe and cannot be activated")

        entries = list(self._entries)

        if recipe_exists(config_dir, unit, LIB):
            if RunListEntry(unit, LIB) in entries:
                logger.info(f"Run list already has lib entry for {unit}, not adding")
            else:
                entries.insert(_end_of_leading(entries, {LIB}), RunListEntry(unit, LIB))

        if RunListEntry(unit, DEFAULT) in entries:
            logger.info(f"Run list already has default entry for {unit}, not adding")
        else:
            entries.insert(_end_of_leading(entries, {LIB, DEFAULT}), RunListEntry(unit, DEFAULT))

        if recipe_exists(config_dir, unit, VALIDATE):
            if RunListEntry(unit, VALIDATE) in entries:
                logger.info(f"Run list already has validate entry for {unit}, not adding")
            else:
                entries.append(RunListEntry(unit, VALIDATE))

        return RunList(entries)

    def sorted_with_priority(
        self,
        unit: str,
        dependencies: Sequence[str],
        config_dir: Path
    ) -> "RunList":
        """
        Reorder so `unit` runs right after its dependencies.

        defaults:  deps' defaults (given order) ++ unit's default ++ other defaults
        validates: deps' validates ++ other validates ++ unit's validate (last)

        lib entries keep the grouped order of category_entries, with the
        dependencies and unit added as candidates.
        """
        deps = [d for d in (dependencies or ()) if d != unit]
        priority = deps + [unit]

        libs = self.category_entries(config_dir, LIB, priority)

        defaults = [RunListEntry(d, DEFAULT) for d in priority if recipe_exists(config_dir, d, DEFAULT)]
        for e in self.category_entries(config_dir, DEFAULT):
            if e.unit not in priority:
                defaults.append(e)

        validates = [RunListEntry(d, VALIDATE) for d in deps if recipe_exists(config_dir, d, VALIDATE)]
        for e in self.category_entries(config_dir, VALIDATE):
            if e.unit not in priority:
                validates.append(e)
        if recipe_exists(config_dir, unit, VALIDATE):
            validates.append(RunListEntry(unit, VALIDATE))

        return RunList(libs + defaults + validates)

    def remove_unit(self, unit: str) -> "RunList":
        """Drop every entry of `unit`, whatever its category."""
        # Cookbook directories are left in place; whether another unit still
        # needs this one is not checked.
        return RunList(e for e in self._entries if not e.is_unit(unit))


def _end_of_leading(entries: List[RunListEntry], categories: set) -> int:
    i = 0
    while i < len(entries) and entries[i].category in categories:
        i += 1
    return i


# ==================== Run list document ====================
#
# The document is either an object holding RUN_LIST_KEY (other keys are node
# attributes) or a bare list of entries. // and /* */ comments are accepted
# on read; a rewrite keeps the shape and the other keys, not the comments.

def _strip_comments(text: str) -> str:
    """Remove // and /* */ comments that are not inside a JSON string."""
    out = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        c = text[i]
        if in_string:
            out.append(c)
            if c == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if c == '"':
                in_string = False
            i += 1
        elif c == '"':
            in_string = True
            out.append(c)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                # unterminated, let the JSON parser report it
                out.append(text[i:])
                break
            out.append(" ")
            i = end + 2
        else:
            out.append(c)
            i += 1
    return "".join(out)


def _read_document(path: Path):
    """
    Parse the run list document at `path`.

    Raises:
        RunListError: If the file cannot be read or is not valid JSON
    """
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise RunListError(f"cannot read {path}: {e}")
    try:
        return json.loads(_strip_comments(text))
    except json.JSONDecodeError as e:
        raise RunListError(f"cannot parse {path}: {e}")


def load_run_list(config_dir: Path, name: str = "solo.json") -> RunList:
    """
    Read the run list document from the configuration root.

    A missing document is an empty run list.

    Raises:
        RunListError: If the document is not valid JSON or has bad entries
    """
    path = Path(config_dir) / name
    if not path.exists():
        return RunList()

    data = _read_document(path)
    raw = data.get(RUN_LIST_KEY, []) if isinstance(data, dict) else data
    if not isinstance(raw, list):
        raise RunListError(f"{path}: {RUN_LIST_KEY} must be a list")
    return RunList(raw)


def save_run_list(config_dir: Path, run_list: RunList, name: str = "solo.json") -> Path:
    """
    Write the run list in the shape of the existing document.

    A bare-list document stays a bare list; an object keeps its other keys.
    A new document is written as an object.

    Raises:
        RunListError: If an existing document cannot be parsed (it is left
            untouched)
    """
    path = Path(config_dir) / name
    entries = run_list.to_strings()

    data = {RUN_LIST_KEY: entries}
    if path.exists():
        existing = _read_document(path)
        if isinstance(existing, list):
            data = entries
        elif isinstance(existing, dict):
            existing[RUN_LIST_KEY] = entries
            data = existing
        else:
            raise RunListError(f"{path}: expected an object or a list, not {type(existing).__name__}")

    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    return path
