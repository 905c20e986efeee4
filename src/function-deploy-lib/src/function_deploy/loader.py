"""
function_deploy.loader — Load a service document and inline its $ref nodes.

A reference node is a mapping with a string "$ref" member:

    functions:
      $ref: ./functions.yml            relative file
    custom:
      $ref: https://example.com/c.yml  remote document
    resources:
      $ref: ./resources.yml#/Resources JSON pointer into the target

Relative references resolve against the directory of the document that
contains them (or against its URL for remote documents).  The base location
is passed down every recursive call; the process working directory is never
read or changed.  Local pointers ("#/...") are left untouched.

Cycles are tracked per document and pointer: ./a.yml#/x may be inlined
while a.yml itself is being resolved, but not while /x of a.yml is.

Syntax parsing is delegated to the injected parse callable (PyYAML
safe_load by default).  Resolution never mutates a parsed document: every
splice builds new containers, so a document referenced twice is parsed once
and inlined twice.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urljoin, urlsplit

import requests
import yaml
from aws_lambda_powertools import Logger

from function_deploy.config import DEFAULT_REMOTE_TIMEOUT_SECONDS
from function_deploy.exceptions import (
    CyclicReferenceError,
    DocumentNotFound,
    ReferenceResolutionError,
)

logger = Logger(service="function-deploy")

REF_KEY = "$ref"
_REMOTE_SCHEMES = ("http", "https")

Parser = Callable[[str], Any]
Reader = Callable[[str], str]


def parse_yaml(text: str) -> Any:
    return yaml.safe_load(text)


def read_local(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def _is_remote(location: str) -> bool:
    return urlsplit(location).scheme in _REMOTE_SCHEMES


def _split_reference(ref: str) -> tuple[str, str]:
    target, _, pointer = ref.partition("#")
    return target, pointer


def _follow_pointer(document: Any, pointer: str, ref: str) -> Any:
    """Walk an RFC 6901 JSON pointer ("/a/b/0") through a parsed document."""
    if not pointer:
        return document
    if not pointer.startswith("/"):
        raise ReferenceResolutionError(ref, f"invalid JSON pointer {pointer!r}")
    node = document
    for raw_token in pointer[1:].split("/"):
        token = unquote(raw_token).replace("~1", "/").replace("~0", "~")
        if isinstance(node, dict) and token in node:
            node = node[token]
        elif isinstance(node, list) and token.isdigit() and int(token) < len(node):
            node = node[int(token)]
        else:
            raise ReferenceResolutionError(ref, f"pointer {pointer!r} does not exist in target")
    return node


class ReferenceResolvingLoader:
    """
    Loads a root document and returns a fully inlined tree.

    Raises:
        DocumentNotFound:          the root file cannot be read.
        ReferenceResolutionError:  a reference cannot be fetched, parsed, or
                                   its pointer does not exist.
        CyclicReferenceError:      a document references itself, directly or
                                   through other documents.
    """

    def __init__(
        self,
        *,
        parse: Parser = parse_yaml,
        read: Reader = read_local,
        fetch_remote: Reader | None = None,
        remote_timeout: int = DEFAULT_REMOTE_TIMEOUT_SECONDS,
    ) -> None:
        self._parse = parse
        self._read = read
        self._fetch_remote = fetch_remote or self._http_get
        self._remote_timeout = remote_timeout

    def _http_get(self, uri: str) -> str:
        response = requests.get(uri, timeout=self._remote_timeout)
        response.raise_for_status()
        return response.text

    def load(self, path: str | Path) -> Any:
        root = os.path.abspath(os.fspath(path))
        try:
            text = self._read(root)
        except (OSError, UnicodeDecodeError) as exc:
            raise DocumentNotFound(os.fspath(path)) from exc
        try:
            tree = self._parse(text)
        except (yaml.YAMLError, ValueError) as exc:
            raise ReferenceResolutionError(root, f"invalid document: {exc}") from exc

        logger.debug("Resolving references", document=root)
        cache: dict[str, Any] = {root: tree}
        resolved = self._resolve(tree, root, (root,), cache)
        return {} if resolved is None else resolved

    # ------------------------------------------------------------------
    # Recursion
    # ------------------------------------------------------------------

    def _resolve(self, node: Any, source: str, chain: tuple[str, ...], cache: dict[str, Any]) -> Any:
        if isinstance(node, dict):
            ref = node.get(REF_KEY)
            if isinstance(ref, str) and not ref.startswith("#"):
                return self._splice(ref, source, chain, cache)
            return {key: self._resolve(value, source, chain, cache) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve(item, source, chain, cache) for item in node]
        return node

    def _splice(self, ref: str, source: str, chain: tuple[str, ...], cache: dict[str, Any]) -> Any:
        target, pointer = _split_reference(ref)
        location = self._locate(target, source)
        link = f"{location}#{pointer}" if pointer else location
        if link in chain:
            raise CyclicReferenceError([*chain, link])

        document = self._document(location, ref, cache)
        fragment = _follow_pointer(document, pointer, ref)
        logger.debug("Inlining reference", reference=ref, location=location)
        return self._resolve(fragment, location, (*chain, link), cache)

    @staticmethod
    def _locate(target: str, source: str) -> str:
        """Absolute location of target relative to the document at source."""
        if _is_remote(target):
            return target
        if _is_remote(source):
            return urljoin(source, target)
        return os.path.normpath(os.path.join(os.path.dirname(source), target))

    def _document(self, location: str, ref: str, cache: dict[str, Any]) -> Any:
        if location in cache:
            return cache[location]
        try:
            text = self._fetch_remote(location) if _is_remote(location) else self._read(location)
        except (OSError, UnicodeDecodeError, requests.RequestException) as exc:
            raise ReferenceResolutionError(ref, f"could not read {location}: {exc}") from exc
        try:
            document = self._parse(text)
        except (yaml.YAMLError, ValueError) as exc:
            raise ReferenceResolutionError(ref, f"could not parse {location}: {exc}") from exc
        cache[location] = document
        return document
