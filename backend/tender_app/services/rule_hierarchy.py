"""
Rule Hierarchy Resolver: NRM2 classification tree over materialized paths.

Each rule stores only a dot-delimited ``path`` (e.g. "1.2.3"), a possibly
stale ``level`` and an optional denormalized ``parent_path``. There is no
native tree column, so parent/child relationships are inferred here.

Child resolution runs an explicit, ordered list of match strategies:

    parent_path    rule.parent_path equals the queried parent     (confident)
    path_structure path minus its last segment equals the parent  (confident)
    level_prefix   right level + path starts with "parent."       (fallback)
    lenient        same first segment + depth == expected level   (uncertain)

Fallback and lenient matches are reported as a ResolutionAmbiguity and logged
at WARNING; they never raise. Insertion computes path/level for "child of X"
or "sibling of X", rejects bad codes, out-of-range levels and duplicate paths,
and never rewrites any existing node.

Ordering is plain lexicographic on the path text, so "1.10" sorts before
"1.2". This matches the store's ORDER BY path and is kept as-is.
"""
import logging
import re
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from tender_app.config import LEVEL_NAMES, MAX_RULE_LEVEL, MIN_RULE_LEVEL, PATH_DELIMITER
from tender_app.services.errors import ConflictError, ResolutionAmbiguity, ValidationError

logger = logging.getLogger("tender-rules")

_PATH_RE = re.compile(r"^[A-Za-z0-9.]+$")
_CODE_STRIP_RE = re.compile(r"[^A-Za-z0-9.]")
_MULTI_DOT_RE = re.compile(r"\.{2,}")
_WHITESPACE_RE = re.compile(r"\s+")

MODE_CHILD = "child"
MODE_SIBLING = "sibling"


# ── Path helpers ──────────────────────────────────────────────────────────────

def normalize_path(path: Any) -> str:
    """Coerce a stored path (text, ltree-ish object, None) to trimmed text."""
    if path is None:
        return ""
    return str(path).strip()


def path_key(path: Any) -> str:
    """Comparison key: trimmed and lower-cased."""
    return normalize_path(path).lower()


def split_path(path: Any) -> List[str]:
    return [p for p in normalize_path(path).split(PATH_DELIMITER) if p]


def path_depth(path: Any) -> int:
    return len(split_path(path))


def strip_last_segment(path: Any) -> str:
    return PATH_DELIMITER.join(split_path(path)[:-1])


def derive_parent_path(path: Any) -> Optional[str]:
    parent = strip_last_segment(path)
    return parent or None


def join_path(base: str, code: str) -> str:
    base = normalize_path(base)
    return f"{base}{PATH_DELIMITER}{code}" if base else code


def sanitize_code(raw: Any) -> str:
    """
    Reduce a user-typed code to [A-Za-z0-9.]: inner whitespace becomes a dot,
    other characters are dropped, repeated dots collapse and leading/trailing
    dots are trimmed. Raises ValidationError when nothing is left.
    """
    text = _WHITESPACE_RE.sub(PATH_DELIMITER, normalize_path(raw))
    text = _CODE_STRIP_RE.sub("", text)
    text = _MULTI_DOT_RE.sub(PATH_DELIMITER, text).strip(PATH_DELIMITER)
    if not text:
        raise ValidationError(
            "Code must contain at least one letter or digit",
            code=normalize_path(raw),
        )
    return text


def validate_path_format(path: str) -> None:
    if not path or not _PATH_RE.match(path):
        raise ValidationError(
            "Path must contain only alphanumeric characters and dots",
            path=path,
        )
    if any(not segment for segment in path.split(PATH_DELIMITER)):
        raise ValidationError("Path cannot contain empty segments", path=path)


def validate_level(level: Any, path: Optional[str] = None) -> int:
    try:
        value = int(level)
    except (TypeError, ValueError):
        raise ValidationError("Level must be an integer", level=level, path=path)
    if isinstance(level, float) and level != value:
        raise ValidationError("Level must be an integer", level=level, path=path)
    if value < MIN_RULE_LEVEL or value > MAX_RULE_LEVEL:
        raise ValidationError(
            f"Level must be between {MIN_RULE_LEVEL} and {MAX_RULE_LEVEL}",
            level=value, path=path, max_depth=MAX_RULE_LEVEL,
        )
    return value


def level_name(level: int) -> str:
    name = LEVEL_NAMES.get(level)
    return f"{name} (Level {level})" if name else "Rule"


# ── Node ──────────────────────────────────────────────────────────────────────

@dataclass
class RuleNode:
    id: Optional[str] = None
    section_id: Optional[str] = None
    path: str = ""
    level: Optional[int] = None
    parent_path: Optional[str] = None
    content: str = ""
    unit: Optional[str] = None
    measurement_logic: Dict[str, Any] = field(default_factory=dict)
    coverage_rules: List[Any] = field(default_factory=list)
    examples: Optional[str] = None
    notes: Optional[str] = None
    child_count: int = 0

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "RuleNode":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["path"] = normalize_path(kwargs.get("path"))
        parent = kwargs.get("parent_path")
        kwargs["parent_path"] = normalize_path(parent) if parent else None
        if kwargs.get("level") is not None:
            kwargs["level"] = int(kwargs["level"])
        if kwargs.get("section_id") is not None:
            kwargs["section_id"] = str(kwargs["section_id"])
        if kwargs.get("id") is not None:
            kwargs["id"] = str(kwargs["id"])
        kwargs["measurement_logic"] = kwargs.get("measurement_logic") or {}
        kwargs["coverage_rules"] = kwargs.get("coverage_rules") or []
        kwargs["content"] = kwargs.get("content") or ""
        return cls(**kwargs)

    @property
    def key(self) -> str:
        return path_key(self.path)

    @property
    def segments(self) -> List[str]:
        return split_path(self.path)

    @property
    def depth(self) -> int:
        return len(self.segments)

    @property
    def is_leaf(self) -> bool:
        return self.child_count == 0

    @property
    def effective_parent_path(self) -> Optional[str]:
        """Stored parent_path when present, else derived from the path."""
        return self.parent_path if self.parent_path else derive_parent_path(self.path)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["path"] = str(self.path)
        data["level_name"] = level_name(self.level) if self.level is not None else "Rule"
        return data


def sort_by_path(nodes: Iterable[RuleNode]) -> List[RuleNode]:
    return sorted(nodes, key=lambda n: n.path)


def find_by_path(nodes: Iterable[RuleNode], path: Any) -> Optional[RuleNode]:
    key = path_key(path)
    if not key:
        return None
    for node in nodes:
        if node.key == key:
            return node
    return None


# ── Child match strategies ────────────────────────────────────────────────────

@dataclass(frozen=True)
class MatchStrategy:
    name: str
    confident: bool
    test: Callable[[RuleNode, str], bool]

    def matches(self, node: RuleNode, parent_key: str) -> bool:
        return self.test(node, parent_key)


def _by_parent_path(node: RuleNode, parent_key: str) -> bool:
    return bool(node.parent_path) and path_key(node.parent_path) == parent_key


def _by_path_structure(node: RuleNode, parent_key: str) -> bool:
    return path_key(strip_last_segment(node.path)) == parent_key


def _by_level_prefix(node: RuleNode, parent_key: str) -> bool:
    # Candidates are pre-filtered on level and prefix, so this always accepts
    return node.key.startswith(parent_key + PATH_DELIMITER)


CHILD_STRATEGIES: Tuple[MatchStrategy, ...] = (
    MatchStrategy("parent_path", True, _by_parent_path),
    MatchStrategy("path_structure", True, _by_path_structure),
    MatchStrategy("level_prefix", False, _by_level_prefix),
)

STRATEGY_LENIENT = "lenient"
STRATEGY_NONE = "none"
STRATEGY_LEVEL = "level"


@dataclass
class ChildResolution:
    """Result of a child lookup. ``uncertain`` is set for any fallback."""
    parent_path: str
    expected_level: Optional[int]
    children: List[RuleNode] = field(default_factory=list)
    parent: Optional[RuleNode] = None
    strategy: str = STRATEGY_NONE
    matched_by: Dict[str, str] = field(default_factory=dict)
    ambiguity: Optional[ResolutionAmbiguity] = None

    @property
    def uncertain(self) -> bool:
        return self.ambiguity is not None

    @property
    def paths(self) -> List[str]:
        return [c.path for c in self.children]

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "parent_path": self.parent_path,
            "expected_level": self.expected_level,
            "strategy": self.strategy,
            "uncertain": self.uncertain,
            "matched_by": dict(self.matched_by),
            "ambiguity": self.ambiguity.to_dict() if self.ambiguity else None,
        }


@dataclass
class InsertionPlan:
    """Computed placement for a new rule; nothing has been written yet."""
    section_id: Optional[str]
    path: str
    level: int
    parent_path: Optional[str]
    code: Optional[str] = None
    mode: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def depth_matches_level(self) -> bool:
        return path_depth(self.path) == self.level


# ── Resolver ──────────────────────────────────────────────────────────────────

class RuleHierarchy:
    """
    One section's rule set plus the resolution/insertion policy over it.

    The node list is the only state; it is appended to on insertion and
    never rewritten.
    """

    def __init__(self, nodes: Iterable[Any] = (), section_id: Optional[str] = None):
        self.section_id = str(section_id) if section_id is not None else None
        self.nodes: List[RuleNode] = [
            n if isinstance(n, RuleNode) else RuleNode.from_mapping(n) for n in nodes
        ]

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def find(self, path: Any) -> Optional[RuleNode]:
        return find_by_path(self.nodes, path)

    def find_by_id(self, rule_id: Any) -> Optional[RuleNode]:
        rule_id = str(rule_id)
        for node in self.nodes:
            if node.id == rule_id:
                return node
        return None

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def at_level(self, level: Optional[int] = None) -> List[RuleNode]:
        """Level-filtered listing ordered by path; all nodes when level is None."""
        if level is None:
            return sort_by_path(self.nodes)
        return sort_by_path(n for n in self.nodes if n.level == level)

    def children(self, parent_path: Any) -> ChildResolution:
        """
        Resolve the immediate children of ``parent_path``.

        Expected child level comes from the parent's stored level + 1; when the
        parent row is missing the parent path's segment count is used instead.
        Candidates are rules at that level whose path starts with "parent.".
        Each candidate is tagged with the first strategy that accepts it. If no
        candidate exists, a lenient first-segment match is attempted.
        """
        parent_text = normalize_path(parent_path)
        parent_key = parent_text.lower()
        parent = self.find(parent_text)
        notes: List[str] = []

        if parent is not None and parent.level is not None:
            expected_level = parent.level + 1
            logger.debug("Parent %s found at level %s -> child level %s", parent.path, parent.level, expected_level)
        else:
            expected_level = path_depth(parent_text)
            notes.append(f"parent '{parent_text}' not found; using path depth {expected_level} as child level")
            logger.warning(
                "Parent rule %r not found in section %s; falling back to path depth %s",
                parent_text, self.section_id, expected_level,
                extra={"section_id": self.section_id, "match_strategy": "path_depth"},
            )

        result = ChildResolution(parent_path=parent_text, expected_level=expected_level, parent=parent)
        level_nodes = [n for n in self.nodes if n.level == expected_level]
        prefix = parent_key + PATH_DELIMITER
        candidates = [n for n in level_nodes if n.key.startswith(prefix)] if parent_key else []

        weakest: Optional[MatchStrategy] = None
        for node in sort_by_path(candidates):
            for strategy in CHILD_STRATEGIES:
                if strategy.matches(node, parent_key):
                    result.children.append(node)
                    result.matched_by[node.path] = strategy.name
                    if weakest is None or CHILD_STRATEGIES.index(strategy) > CHILD_STRATEGIES.index(weakest):
                        weakest = strategy
                    break

        if result.children:
            result.strategy = weakest.name
            if not weakest.confident:
                fallback = [p for p, s in result.matched_by.items() if s == weakest.name]
                notes.append(f"{len(fallback)} child(ren) matched only by level and prefix: {fallback}")
                logger.warning(
                    "Hierarchy drift under %r: %s matched by level+prefix fallback",
                    parent_text, fallback,
                    extra={"section_id": self.section_id, "match_strategy": weakest.name},
                )
            if notes:
                result.ambiguity = ResolutionAmbiguity(
                    strategy=result.strategy,
                    parent_path=parent_text,
                    notes=notes,
                    parent_found=parent is not None,
                    expected_level=expected_level,
                )
            return result

        lenient = self._lenient_children(parent_text, expected_level, level_nodes)
        if lenient:
            result.children = lenient
            result.strategy = STRATEGY_LENIENT
            result.matched_by = {n.path: STRATEGY_LENIENT for n in lenient}
            notes.append("no prefix match; accepted first-segment lenient matches")
            logger.warning(
                "No exact children for %r; lenient matches: %s",
                parent_text, [n.path for n in lenient],
                extra={"section_id": self.section_id, "match_strategy": STRATEGY_LENIENT},
            )
        else:
            logger.debug("No children for %r at level %s (leaf)", parent_text, expected_level)

        if notes:
            result.ambiguity = ResolutionAmbiguity(
                strategy=result.strategy,
                parent_path=parent_text,
                notes=notes,
                parent_found=parent is not None,
                expected_level=expected_level,
            )
        return result

    @staticmethod
    def _lenient_children(parent_text: str, expected_level: int, level_nodes: List[RuleNode]) -> List[RuleNode]:
        segments = split_path(parent_text)
        if not segments:
            return []
        first = segments[0].lower()
        return sort_by_path(
            n for n in level_nodes
            if n.segments and n.segments[0].lower() == first and n.depth == expected_level
        )

    def list_rules(self, parent_path: Any = None, level: Optional[int] = None) -> ChildResolution:
        """
        Listing entry point used by the rule browser:
          parent_path given  → child resolution
          otherwise          → exact level filter (or everything) ordered by path
        """
        if normalize_path(parent_path):
            resolution = self.children(parent_path)
        else:
            resolution = ChildResolution(parent_path="", expected_level=level, strategy=STRATEGY_LEVEL)
            resolution.children = self.at_level(level)
        counts = self.child_counts()
        for node in resolution.children:
            node.child_count = counts.get(node.key, 0)
        return resolution

    # ------------------------------------------------------------------
    # Parent resolution / tree view
    # ------------------------------------------------------------------

    def resolve_parent(self, node: RuleNode) -> Tuple[Optional[RuleNode], str]:
        """
        True parent of ``node``:
          1. a rule at level-1 whose path equals the first (level-1) segments,
             or is a dot-prefix of this path
          2. a rule whose path equals this path minus its last segment
          3. the deepest rule whose path is a strict dot-prefix
          4. the rule named by the stored parent_path
        """
        if node.depth <= 1 and (node.level is None or node.level <= 1):
            return None, STRATEGY_NONE
        others = [n for n in self.nodes if n is not node and n.key != node.key]

        if node.level is not None and node.level > 1:
            parent_level = node.level - 1
            from_segments = path_key(PATH_DELIMITER.join(node.segments[:parent_level]))
            level_matches = [
                n for n in others
                if n.level == parent_level
                and (n.key == from_segments or node.key.startswith(n.key + PATH_DELIMITER))
            ]
            if level_matches:
                return max(level_matches, key=lambda n: n.depth), "level"

        structural = path_key(strip_last_segment(node.path))
        if structural:
            for n in others:
                if n.key == structural:
                    return n, "segments"

        prefixes = [n for n in others if node.key.startswith(n.key + PATH_DELIMITER)]
        if prefixes:
            return max(prefixes, key=lambda n: n.depth), "prefix"

        if node.parent_path:
            stored = self.find(node.parent_path)
            if stored is not None and stored is not node:
                return stored, "parent_path"

        return None, STRATEGY_NONE

    def child_counts(self) -> Dict[str, int]:
        """Number of direct children per parent path key."""
        counts: Dict[str, int] = {}
        for node in self.nodes:
            parent, _ = self.resolve_parent(node)
            if parent is not None:
                counts[parent.key] = counts.get(parent.key, 0) + 1
        return counts

    def annotate_child_counts(self) -> List[RuleNode]:
        counts = self.child_counts()
        for node in self.nodes:
            node.child_count = counts.get(node.key, 0)
        return self.nodes

    def auto_expand_paths(self) -> Set[str]:
        """Every path that has children; the CMS opens these so drift is visible."""
        by_key = {n.key: n.path for n in self.nodes}
        return {by_key[k] for k, count in self.child_counts().items() if count > 0 and k in by_key}

    def visible_rules(self, expanded_paths: Optional[Iterable[str]] = None) -> List[RuleNode]:
        """
        Admin tree view. Sorted by level then path; level-1 rules are always
        shown, deeper rules only when their resolved parent is expanded.
        Rules with no resolvable parent are shown rather than hidden.
        """
        expanded = {path_key(p) for p in (expanded_paths if expanded_paths is not None else self.auto_expand_paths())}
        ordered = sorted(self.nodes, key=lambda n: (n.level if n.level is not None else n.depth, n.path))
        visible: List[RuleNode] = []
        for node in ordered:
            if node.level == 1:
                visible.append(node)
                continue
            parent, _ = self.resolve_parent(node)
            if parent is not None:
                if parent.key in expanded:
                    visible.append(node)
                continue
            if node.parent_path:
                if path_key(node.parent_path) in expanded:
                    visible.append(node)
                continue
            visible.append(node)
        return visible

    def descendants(self, path: Any) -> List[RuleNode]:
        prefix = path_key(path) + PATH_DELIMITER
        return sort_by_path(n for n in self.nodes if n.key.startswith(prefix))

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------

    def _check_unique(self, path: str, level: int) -> None:
        existing = self.find(path)
        if existing is not None:
            raise ConflictError(
                f'A rule with path "{path}" already exists in this section',
                path=path,
                existing_path=existing.path,
                section_id=self.section_id,
                level=level,
                suggestion="Use a different code, or add the rule as a sibling instead",
            )

    def _warn_on_depth(self, plan: InsertionPlan) -> None:
        if not plan.depth_matches_level:
            message = (
                f"level {plan.level} does not match path depth {path_depth(plan.path)} "
                f"for '{plan.path}' (non-blocking)"
            )
            plan.warnings.append(message)
            logger.warning(
                "Insert %s: %s", plan.path, message,
                extra={"section_id": self.section_id, "match_strategy": plan.mode or "explicit"},
            )

    def plan_insertion(self, anchor: Optional[RuleNode], mode: str, code: Any) -> InsertionPlan:
        """
        Compute path and level for a new rule relative to ``anchor``.

          child   : base = anchor.path,                 level = anchor.level + 1
          sibling : base = anchor's parent path or "",  level = anchor.level
          (no anchor): top-level rule,                  level = 1

        The anchor's parent path is its stored parent_path, or, when that is
        absent, the path with the last segment removed.
        """
        clean = sanitize_code(code)
        if anchor is None:
            base, new_level = "", MIN_RULE_LEVEL
        elif mode == MODE_CHILD:
            base = anchor.path
            new_level = (anchor.level if anchor.level is not None else anchor.depth) + 1
        elif mode == MODE_SIBLING:
            base = anchor.effective_parent_path or ""
            new_level = anchor.level if anchor.level is not None else anchor.depth
        else:
            raise ValidationError("mode must be 'child' or 'sibling'", mode=mode)

        new_path = join_path(base, clean)
        if new_level > MAX_RULE_LEVEL or new_level < MIN_RULE_LEVEL:
            raise ValidationError(
                f"Maximum hierarchy depth is {MAX_RULE_LEVEL} levels"
                if new_level > MAX_RULE_LEVEL else "Invalid level calculation",
                path=new_path, level=new_level, mode=mode,
                anchor_path=anchor.path if anchor else None,
            )
        validate_path_format(new_path)
        self._check_unique(new_path, new_level)

        plan = InsertionPlan(
            section_id=self.section_id,
            path=new_path,
            level=new_level,
            parent_path=base or None,
            code=clean,
            mode=mode if anchor is not None else None,
        )
        self._warn_on_depth(plan)
        return plan

    def plan_explicit(self, path: Any, level: Any, parent_path: Any = None) -> InsertionPlan:
        """Validate a client-computed path/level pair (raw creation body)."""
        text = normalize_path(path)
        validate_path_format(text)
        value = validate_level(level, text)
        self._check_unique(text, value)
        plan = InsertionPlan(
            section_id=self.section_id,
            path=text,
            level=value,
            parent_path=normalize_path(parent_path) or derive_parent_path(text),
        )
        self._warn_on_depth(plan)
        return plan

    def insert(self, plan: InsertionPlan, **content: Any) -> RuleNode:
        """Append a node for a plan. Re-checks uniqueness; touches no other node."""
        self._check_unique(plan.path, plan.level)
        node = RuleNode.from_mapping({
            "section_id": plan.section_id,
            "path": plan.path,
            "level": plan.level,
            "parent_path": plan.parent_path,
            **content,
        })
        self.nodes.append(node)
        return node

    def insert_child(self, anchor: RuleNode, code: Any, **content: Any) -> RuleNode:
        return self.insert(self.plan_insertion(anchor, MODE_CHILD, code), **content)

    def insert_sibling(self, anchor: RuleNode, code: Any, **content: Any) -> RuleNode:
        return self.insert(self.plan_insertion(anchor, MODE_SIBLING, code), **content)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def drift_report(self) -> Dict[str, Any]:
        """Bookkeeping anomalies an administrator should review."""
        level_mismatch = [
            {"path": n.path, "level": n.level, "depth": n.depth}
            for n in sort_by_path(self.nodes) if n.level != n.depth
        ]
        stale_parent = [
            {"path": n.path, "parent_path": n.parent_path, "derived": derive_parent_path(n.path)}
            for n in sort_by_path(self.nodes)
            if n.parent_path and path_key(n.parent_path) != path_key(derive_parent_path(n.path))
        ]
        orphans = [
            n.path for n in sort_by_path(self.nodes)
            if (n.level or n.depth) > 1 and self.resolve_parent(n)[0] is None
        ]
        seen: Dict[str, List[str]] = {}
        for n in self.nodes:
            seen.setdefault(n.key, []).append(n.path)
        duplicates = sorted(paths for paths in seen.values() if len(paths) > 1)
        too_deep = [n.path for n in sort_by_path(self.nodes) if (n.level or 0) > MAX_RULE_LEVEL]
        return {
            "section_id": self.section_id,
            "rule_count": len(self.nodes),
            "level_mismatch": level_mismatch,
            "stale_parent_path": stale_parent,
            "orphans": orphans,
            "duplicates": duplicates,
            "too_deep": too_deep,
            "clean": not (level_mismatch or stale_parent or orphans or duplicates or too_deep),
        }
