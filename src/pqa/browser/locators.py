"""Locator strategies — find the chat input, the submit control and the response container.

Each target kind has an ordered list of declarative ``LocatorRule`` entries
(a CSS selector plus an optional text predicate) and a scoring fallback that
only runs when no rule yields a usable element.  Rules are configuration:
the defaults below cover common chat UIs and can be replaced per target from
a TOML or JSON file.

Scoring is pure Python over ``ElementCandidate`` records produced by the
page driver's DOM scan, so the heuristics are testable without a browser::

    PageDriver.query(selector)   →  list[ElementCandidate]
    LocatorStrategySet           →  best candidate per kind
    PageAgent                    →  acts on candidate.ref
"""

from __future__ import annotations

import json
import logging
import re
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from pqa.browser.page_agent import PageDriver

logger = logging.getLogger(__name__)


class TargetKind(str, Enum):
    """Kinds of element the agent needs to find."""

    INPUT = "input"
    SUBMIT = "submit"
    RESPONSE = "response"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LocatorRule:
    """A CSS selector with an optional case-insensitive text predicate."""

    selector: str
    text_contains: str = ""

    def accepts(self, candidate: ElementCandidate) -> bool:
        """Return True when the candidate satisfies the text predicate."""
        if not self.text_contains:
            return True
        needle = self.text_contains.lower()
        return needle in candidate.text.lower() or needle in candidate.aria_label.lower()

    @classmethod
    def parse(cls, raw: str | dict[str, Any]) -> LocatorRule:
        """Build a rule from a bare selector string or a ``{selector, text}`` mapping."""
        if isinstance(raw, str):
            return cls(selector=raw)
        return cls(selector=str(raw["selector"]), text_contains=str(raw.get("text", "")))


@dataclass
class ElementCandidate:
    """One element as seen by the DOM scan.

    ``ref`` is a stable handle stamped onto the element by the scan so later
    actions can address exactly this node.
    """

    ref: str
    tag: str = ""
    text: str = ""
    text_length: int = 0
    aria_label: str = ""
    title: str = ""
    class_name: str = ""
    element_id: str = ""
    input_type: str = ""
    role: str = ""
    testid: str = ""
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    viewport_width: float = 0.0
    has_box: bool = True
    style_hidden: bool = False
    disabled: bool = False
    readonly: bool = False
    content_editable: bool = False
    in_form: bool = False
    has_icon: bool = False
    has_spinner: bool = False
    # Position in the whole document, comparable across selectors.
    dom_order: int = 0

    @property
    def visible(self) -> bool:
        """Non-zero layout box and not hidden by display/visibility/opacity."""
        return self.has_box and not self.style_hidden

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def is_text_entry(self) -> bool:
        """True for elements that accept typed text."""
        if self.tag == "textarea" or self.content_editable or self.role == "textbox":
            return True
        return self.tag == "input" and self.input_type in ("", "text", "search")

    @property
    def content_index(self) -> int | None:
        """Trailing number of an indexed content-block id (``markdown-content-12`` → 12)."""
        match = _INDEXED_ID_RE.search(self.element_id)
        return int(match.group(1)) if match else None

    @classmethod
    def from_scan(cls, raw: dict[str, Any]) -> ElementCandidate:
        """Map a raw scan dict to a candidate, ignoring unknown keys."""
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in raw.items() if k in known and v is not None})


@dataclass
class LocatorStrategy:
    """Ordered rules plus the selector feeding the scoring fallback for one kind."""

    kind: TargetKind
    rules: list[LocatorRule]
    fallback_selector: str = ""


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

_INDEXED_ID_RE = re.compile(r"(?:content|message|response|answer)[-_]?(\d+)$", re.IGNORECASE)

SUBMIT_KEYWORDS: tuple[str, ...] = ("send", "submit", "search", "ask", "go", "enter")
_SUBMIT_WORD_RE = re.compile(r"\b(" + "|".join(SUBMIT_KEYWORDS) + r")\b", re.IGNORECASE)

LOADING_SELECTORS: tuple[str, ...] = (
    '[role="progressbar"]',
    '[aria-busy="true"]',
    ".Loader",
    'svg[aria-label="Loading"]',
    '[data-testid*="spinner"]',
    '[data-testid*="loading"]',
)

DEFAULT_RULES: dict[TargetKind, list[str | dict[str, str]]] = {
    TargetKind.INPUT: [
        'textarea[placeholder*="Ask" i]',
        'textarea[placeholder*="message" i]',
        "textarea",
        '[role="textbox"]',
        '[contenteditable="true"]',
        '[data-testid*="input" i]',
        'input[type="text"]',
        "#search-input",
    ],
    TargetKind.SUBMIT: [
        'button[type="submit"]',
        'button[aria-label*="send" i]',
        'button[aria-label*="submit" i]',
        'button[title*="send" i]',
        {"selector": "button", "text": "Send"},
        {"selector": "button", "text": "Submit"},
        '[data-testid*="send" i]',
        "form button:last-child",
        ".submit-button",
    ],
    TargetKind.RESPONSE: [
        '[data-message-author="ai"]',
        '[data-author="ai"]',
        '[data-message-author-role="assistant"]',
        'div[data-testid*="ai-response" i]',
        '[id^="markdown-content-"]',
        "main .markdown",
        ".markdown-body",
        ".prose",
        'main div[class*="message" i]',
    ],
}

DEFAULT_FALLBACKS: dict[TargetKind, str] = {
    TargetKind.INPUT: 'textarea, input[type="text"], input[type="search"], input:not([type]), [contenteditable="true"], [role="textbox"]',
    TargetKind.SUBMIT: 'button, [role="button"], input[type="submit"]',
    TargetKind.RESPONSE: (
        '[class*="response" i], [class*="answer" i], [class*="message" i], '
        '[data-testid*="response" i], [id*="content-" i], [id*="message-" i]'
    ),
}


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def is_submit_like(candidate: ElementCandidate) -> bool:
    """Submit-likelihood check applied to rule matches.

    A keyword in text/aria-label/title/class/id, a native submit type, or an
    icon child all qualify.
    """
    if candidate.input_type == "submit" or candidate.has_icon:
        return True
    haystack = " ".join(
        (candidate.text, candidate.aria_label, candidate.title, candidate.class_name, candidate.element_id)
    ).lower()
    return any(word in haystack for word in SUBMIT_KEYWORDS)


def score_submit_candidate(candidate: ElementCandidate) -> int:
    """Weighted score for a button-like element being the submit control.

    Signals and weights:
      - Keyword as a whole word in text: 50 pts (substring: 30)
      - Keyword in aria-label: 40 pts whole word, 25 substring
      - Keyword in title: 30 pts whole word, 20 substring
      - Keyword in class / id: 15 pts each
      - Native submit type: 40 pts
      - Inside a form: 20 pts
      - Contains an icon: 25 pts
      - Right-hand side of the viewport: 10 pts
      - Tiny (area < 100px²): -20 pts; comfortable (> 500px²): 10 pts
    """
    score = 0

    for value, whole, partial in (
        (candidate.text, 50, 30),
        (candidate.aria_label, 40, 25),
        (candidate.title, 30, 20),
    ):
        if not value:
            continue
        if _SUBMIT_WORD_RE.search(value):
            score += whole
        elif any(word in value.lower() for word in SUBMIT_KEYWORDS):
            score += partial

    for value in (candidate.class_name, candidate.element_id):
        if value and any(word in value.lower() for word in SUBMIT_KEYWORDS):
            score += 15

    if candidate.input_type == "submit":
        score += 40
    if candidate.in_form:
        score += 20
    if candidate.has_icon:
        score += 25
    if candidate.viewport_width and candidate.x + candidate.width > candidate.viewport_width * 0.7:
        score += 10

    if candidate.area < 100:
        score -= 20
    elif candidate.area > 500:
        score += 10

    return score


def pick_submit_fallback(candidates: Iterable[ElementCandidate]) -> ElementCandidate | None:
    """Highest-scoring visible, enabled button with a score above zero."""
    best: ElementCandidate | None = None
    best_score = 0
    for candidate in candidates:
        if not candidate.visible or candidate.disabled:
            continue
        score = score_submit_candidate(candidate)
        logger.debug("submit candidate %s scored %d", candidate.ref, score)
        if score > best_score:
            best, best_score = candidate, score
    return best


def pick_input_fallback(candidates: Iterable[ElementCandidate]) -> ElementCandidate | None:
    """Largest visible, enabled, writable text-entry element."""
    usable = [c for c in candidates if _usable_input(c)]
    if not usable:
        return None
    return max(usable, key=lambda c: c.area)


def response_rank(candidate: ElementCandidate) -> tuple[int, int, int]:
    """Sort key for response containers: indexed ids first, then the highest index, then document order."""
    index = candidate.content_index
    if index is None:
        return (0, 0, candidate.dom_order)
    return (1, index, candidate.dom_order)


def pick_new_response(
    candidates: Iterable[ElementCandidate], baseline: frozenset[str] | set[str]
) -> ElementCandidate | None:
    """Newest response container not present before submission.

    Candidates carrying an indexed content-block id win over generic matches;
    among those the highest index is chosen.  Otherwise the last one in
    document order is taken.
    """
    fresh = [c for c in candidates if c.ref not in baseline and _usable_response(c)]
    if not fresh:
        return None
    return max(fresh, key=response_rank)


def _usable_input(candidate: ElementCandidate) -> bool:
    return candidate.visible and candidate.is_text_entry and not candidate.disabled and not candidate.readonly


def _usable_submit(candidate: ElementCandidate) -> bool:
    return candidate.visible and not candidate.disabled and is_submit_like(candidate)


def _usable_response(candidate: ElementCandidate) -> bool:
    # Background tabs can report empty boxes; rendered text is what counts here.
    return not candidate.style_hidden and candidate.text_length > 0


_USABLE = {
    TargetKind.INPUT: _usable_input,
    TargetKind.SUBMIT: _usable_submit,
    TargetKind.RESPONSE: _usable_response,
}


# ---------------------------------------------------------------------------
# Strategy set
# ---------------------------------------------------------------------------


@dataclass
class LocatorStrategySet:
    """The three per-kind strategies used by the page agent."""

    strategies: dict[TargetKind, LocatorStrategy] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for kind in TargetKind:
            if kind not in self.strategies:
                self.strategies[kind] = LocatorStrategy(
                    kind=kind,
                    rules=[LocatorRule.parse(r) for r in DEFAULT_RULES[kind]],
                    fallback_selector=DEFAULT_FALLBACKS[kind],
                )

    @classmethod
    def default(cls) -> LocatorStrategySet:
        """Strategy set with the built-in rules for every kind."""
        return cls()

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> LocatorStrategySet:
        """Build a set from ``{kind: {rules: [...], fallback: "..."}}``.

        A kind given as a bare list is treated as its rules.  Kinds that are
        missing keep the defaults.  ``submitControl`` / ``responseContainer``
        are accepted as aliases.
        """
        aliases = {"submitcontrol": "submit", "submitbutton": "submit", "responsecontainer": "response"}
        strategies: dict[TargetKind, LocatorStrategy] = {}
        for raw_kind, spec in data.items():
            name = aliases.get(raw_kind.lower(), raw_kind.lower())
            try:
                kind = TargetKind(name)
            except ValueError:
                logger.warning("Ignoring locator rules for unknown kind %r", raw_kind)
                continue
            if isinstance(spec, list):
                spec = {"rules": spec}
            strategies[kind] = LocatorStrategy(
                kind=kind,
                rules=[LocatorRule.parse(r) for r in spec.get("rules", [])],
                fallback_selector=str(spec.get("fallback", DEFAULT_FALLBACKS[kind])),
            )
        return cls(strategies=strategies)

    @classmethod
    def from_file(cls, path: str | Path) -> LocatorStrategySet:
        """Load rules from a ``.toml`` or ``.json`` file."""
        path = Path(path)
        if path.suffix == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        else:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        logger.info("Loaded locator rules from %s", path)
        return cls.from_mapping(data)

    def for_kind(self, kind: TargetKind | str) -> LocatorStrategy:
        return self.strategies[TargetKind(kind)]

    # ------------------------------------------------------------------
    # Locate
    # ------------------------------------------------------------------

    async def locate(self, driver: PageDriver, kind: TargetKind | str) -> ElementCandidate | None:
        """Find the element for ``kind`` once: rules in order, then the fallback."""
        kind = TargetKind(kind)
        strategy = self.strategies[kind]
        usable = _USABLE[kind]

        for rule in strategy.rules:
            for candidate in await driver.query(rule.selector):
                if rule.accepts(candidate) and usable(candidate):
                    logger.debug("%s located via rule %r (%s)", kind.value, rule.selector, candidate.ref)
                    return candidate

        if not strategy.fallback_selector:
            return None
        candidates = await driver.query(strategy.fallback_selector)
        if kind == TargetKind.INPUT:
            found = pick_input_fallback(candidates)
        elif kind == TargetKind.SUBMIT:
            found = pick_submit_fallback(candidates)
        else:
            found = next((c for c in reversed(candidates) if usable(c)), None)
        if found is not None:
            logger.debug("%s located via scoring fallback (%s)", kind.value, found.ref)
        return found

    async def response_refs(self, driver: PageDriver) -> frozenset[str]:
        """Refs of every element that could be a response container right now."""
        strategy = self.strategies[TargetKind.RESPONSE]
        refs: set[str] = set()
        for selector in [r.selector for r in strategy.rules] + [strategy.fallback_selector]:
            if selector:
                refs.update(c.ref for c in await driver.query(selector))
        return frozenset(refs)

    async def new_response_candidates(
        self, driver: PageDriver, baseline: frozenset[str] | set[str]
    ) -> list[ElementCandidate]:
        """Usable response containers absent from ``baseline``.

        Fresh matches of every rule are pooled so the indexed-id preference
        holds across rules.  The broad fallback patterns only run when no rule
        produced a fresh match.
        """
        strategy = self.strategies[TargetKind.RESPONSE]
        pooled: dict[str, ElementCandidate] = {}
        for rule in strategy.rules:
            for candidate in await driver.query(rule.selector):
                if candidate.ref in baseline or candidate.ref in pooled:
                    continue
                if rule.accepts(candidate) and _usable_response(candidate):
                    pooled[candidate.ref] = candidate
        if not pooled and strategy.fallback_selector:
            for candidate in await driver.query(strategy.fallback_selector):
                if candidate.ref not in baseline and _usable_response(candidate):
                    pooled.setdefault(candidate.ref, candidate)
        return list(pooled.values())

    async def locate_new_response(
        self, driver: PageDriver, baseline: frozenset[str] | set[str]
    ) -> ElementCandidate | None:
        """The response container appended since ``baseline`` was taken."""
        return pick_new_response(await self.new_response_candidates(driver, baseline), baseline)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def diagnose(self, driver: PageDriver) -> dict[str, list[dict[str, Any]]]:
        """Report per-rule match and usable counts for every kind."""
        report: dict[str, list[dict[str, Any]]] = {}
        for kind, strategy in self.strategies.items():
            usable = _USABLE[kind]
            rows: list[dict[str, Any]] = []
            for rule in strategy.rules:
                matches = [c for c in await driver.query(rule.selector) if rule.accepts(c)]
                rows.append(
                    {
                        "selector": rule.selector,
                        "text": rule.text_contains,
                        "matched": len(matches),
                        "usable": sum(1 for c in matches if usable(c)),
                    }
                )
            report[kind.value] = rows
        return report
