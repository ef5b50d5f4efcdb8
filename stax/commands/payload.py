"""
Rewriting of single column values

A value is one of three payload kinds:
    - PHP-serialized: parsed into a value tree, string leaves rewritten,
      re-emitted with byte lengths recomputed
    - JSON: parsed, string leaves rewritten, formatting kept where possible
    - plain text: byte-level substitution
Values are handled as bytes so existing multibyte content is never re-encoded.
"""

import json
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from stax.utils import php_serialize

ENCODING = "utf-8"
ERRORS = "surrogateescape"

KIND_UNCHANGED = "unchanged"
KIND_SERIALIZED = "serialized"
KIND_JSON = "json"
KIND_TEXT = "text"


def to_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode(ENCODING, ERRORS)


def from_bytes(data: bytes) -> str:
    return data.decode(ENCODING, ERRORS)


def expand_variants(from_url: str, to_url: str) -> List[Tuple[str, str]]:
    """
    Expands a URL pair into the spellings found in WordPress content

    Besides the pair itself this adds the http:// variant of an https://
    source, the protocol-relative //host form and the www/non-www twin.

    Args:
        from_url: Source URL
        to_url: Target URL

    Returns:
        List[Tuple[str, str]]: Pairs, the given one first
    """
    from_url = from_url.rstrip("/")
    to_url = to_url.rstrip("/")
    pairs = [(from_url, to_url)]

    source = urlsplit(from_url)
    target = urlsplit(to_url)
    if not source.scheme or not source.netloc:
        return pairs

    source_tail = source.netloc + source.path
    target_tail = (target.netloc + target.path) if target.netloc else to_url

    if source.scheme == "https":
        pairs.append((f"http://{source_tail}", to_url))

    if source.netloc.startswith("www."):
        twin = source.netloc[4:] + source.path
    else:
        twin = "www." + source_tail
    pairs.append((f"{source.scheme}://{twin}", to_url))
    if source.scheme == "https":
        pairs.append((f"http://{twin}", to_url))

    pairs.append((f"//{source_tail}", f"//{target_tail}"))
    pairs.append((f"//{twin}", f"//{target_tail}"))

    seen = set()
    unique = []
    for pair in pairs:
        if pair[0] != pair[1] and pair[0] not in seen:
            seen.add(pair[0])
            unique.append(pair)
    return unique


def json_escaped(text: str) -> str:
    """
    Returns the form of a URL as written by encoders that escape slashes
    """
    return text.replace("/", "\\/")


def replace_preserving(data: bytes, old: bytes, new: bytes) -> bytes:
    """
    Replaces old with new; occurrences of old that are already part of new
    stay untouched so the substitution can be repeated safely.
    """
    if old not in data:
        return data
    if old in new:
        return new.join(piece.replace(old, new) for piece in data.split(new))
    return data.replace(old, new)


@dataclass
class RewriteOutcome:
    value: bytes
    kind: str
    changed: bool
    warning: Optional[str] = None


class PayloadRewriter:
    """
    Applies an ordered list of (from, to) pairs to column values
    """

    def __init__(self, pairs: Sequence[Tuple[str, str]]):
        expanded: List[Tuple[bytes, bytes]] = []
        seen = set()
        for old, new in pairs:
            for variant in ((old, new), (json_escaped(old), json_escaped(new))):
                key = to_bytes(variant[0])
                if key and key not in seen and variant[0] != variant[1]:
                    seen.add(key)
                    expanded.append((key, to_bytes(variant[1])))
        # Longest source first so a short pair never cuts into a longer one
        self.pairs = sorted(expanded, key=lambda p: len(p[0]), reverse=True)
        self.needles = [old for old, _ in self.pairs]

    @property
    def search_terms(self) -> List[str]:
        """
        Smallest set of substrings that any matching value must contain
        """
        terms: List[bytes] = []
        for needle in sorted(self.needles, key=len):
            if not any(term in needle for term in terms):
                terms.append(needle)
        return [from_bytes(term) for term in terms]

    def contains(self, data: bytes) -> bool:
        return any(needle in data for needle in self.needles)

    def replace_text(self, data: bytes) -> bytes:
        for old, new in self.pairs:
            data = replace_preserving(data, old, new)
        return data

    def rewrite(self, data: bytes) -> RewriteOutcome:
        """
        Rewrites one value according to its payload kind

        Args:
            data: Raw column value

        Returns:
            RewriteOutcome: New value, detected kind, and a warning if a
                structured payload had to fall back to text substitution
        """
        if not self.contains(data):
            return RewriteOutcome(data, KIND_UNCHANGED, False)

        if php_serialize.looks_serialized(data):
            try:
                value, warning = self._rewrite_serialized(data)
            except php_serialize.PHPSerializeError as e:
                new = self.replace_text(data)
                return RewriteOutcome(new, KIND_TEXT, new != data,
                                      f"serialized payload could not be parsed ({e}); replaced as text")
            return RewriteOutcome(value, KIND_SERIALIZED, value != data, warning)

        rewritten = self._rewrite_json(data)
        if rewritten is not None:
            return RewriteOutcome(rewritten, KIND_JSON, rewritten != data)

        new = self.replace_text(data)
        return RewriteOutcome(new, KIND_TEXT, new != data)

    def _rewrite_serialized(self, data: bytes) -> Tuple[bytes, Optional[str]]:
        tree, trailing = php_serialize.loads(data)
        warnings: List[str] = []

        for custom in php_serialize.iter_opaque(tree):
            if self.contains(custom.payload):
                warnings.append(
                    f"custom-serialized object {from_bytes(custom.class_name)} contains the source URL and was left as is"
                )

        new_tree = php_serialize.walk_strings(tree, lambda leaf: self._rewrite_leaf(leaf, warnings))
        warning = "; ".join(warnings) if warnings else None
        return php_serialize.dumps(new_tree, trailing), warning

    def _rewrite_leaf(self, leaf: bytes, warnings: List[str]) -> bytes:
        """
        Rewrites a string inside a serialized payload, descending into nested payloads
        """
        if not self.contains(leaf):
            return leaf
        if php_serialize.looks_serialized(leaf):
            try:
                value, warning = self._rewrite_serialized(leaf)
                if warning:
                    warnings.append(warning)
                return value
            except php_serialize.PHPSerializeError as e:
                warnings.append(f"nested serialized payload could not be parsed ({e}); replaced as text")
        rewritten = self._rewrite_json(leaf)
        if rewritten is not None:
            return rewritten
        return self.replace_text(leaf)

    def _rewrite_json(self, data: bytes) -> Optional[bytes]:
        """
        Returns the rewritten JSON document, or None if data is not a JSON object or array
        """
        stripped = data.lstrip()
        if stripped[:1] not in (b"{", b"["):
            return None
        try:
            tree = json.loads(data.decode(ENCODING))
        except (UnicodeDecodeError, ValueError):
            return None

        new_tree = self._walk_json(tree)

        # Text substitution keeps the original formatting and escaping when it is equivalent
        candidate = self.replace_text(data)
        try:
            if json.loads(candidate.decode(ENCODING)) == new_tree:
                return candidate
        except (UnicodeDecodeError, ValueError):
            pass
        return json.dumps(new_tree, ensure_ascii=False).encode(ENCODING)

    def _walk_json(self, node: Any) -> Any:
        if isinstance(node, str):
            return from_bytes(self.replace_text(to_bytes(node)))
        if isinstance(node, list):
            return [self._walk_json(item) for item in node]
        if isinstance(node, dict):
            return {self._walk_json(key): self._walk_json(value) for key, value in node.items()}
        return node
