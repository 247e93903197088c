"""
Ledger tag contract.

Tag names are matched exactly. Where the ecosystem has drifted between
spellings, every accepted alias is declared here once and resolved at the
boundary, so downstream code only sees canonical values.
"""

from typing import Iterable, Optional

MANIFEST_CONTENT_TYPE = "application/c2pa"
SIDECAR_MANIFEST_TYPE = "sidecar"

CONTENT_TYPE_TAG = "Content-Type"
MANIFEST_TYPE_TAG = "Manifest-Type"
PHASH_TAG = "pHash"
ORIGINAL_HASH_TAG = "Original-Hash"
ORIGINAL_CONTENT_TYPE_TAG = "Original-Content-Type"
HAS_PRIOR_MANIFEST_TAG = "Has-Prior-Manifest"
APP_NAME_TAG = "App-Name"

MANIFEST_ID_TAGS = ("C2PA-Manifest-ID", "C2PA-Manifest-Id")
MANIFEST_REPO_URL_TAGS = ("C2PA-Manifest-Repo-URL",)
MANIFEST_FETCH_URL_TAGS = ("C2PA-Manifest-Fetch-URL",)

# (alg tag, value tag, scope tag) per accepted naming family
SOFT_BINDING_TAG_FAMILIES = (
    ("C2PA-Soft-Binding-Alg", "C2PA-Soft-Binding-Value", "C2PA-Soft-Binding-Scope"),
    ("C2PA-SoftBinding-Alg", "C2PA-SoftBinding-Value", "C2PA-SoftBinding-Scope"),
)


def tag_value(tags: Iterable[dict], names: Iterable[str] | str) -> Optional[str]:
    """First value of any tag in ``names`` (checked in alias order)."""
    if isinstance(names, str):
        names = (names,)
    tags = list(tags)
    for name in names:
        for tag in tags:
            if tag.get("name") == name and tag.get("value") is not None:
                return str(tag["value"])
    return None


def tag_values(tags: Iterable[dict], names: Iterable[str] | str) -> list[str]:
    """All values, in tag order, of every tag whose name is in ``names``."""
    if isinstance(names, str):
        names = (names,)
    wanted = set(names)
    return [
        str(tag["value"]) for tag in tags
        if tag.get("name") in wanted and tag.get("value") is not None
    ]


def soft_binding_tags(tags: Iterable[dict]) -> tuple[list[str], list[str], list[str]]:
    """
    Soft-binding alg, value and scope tag values merged across families.

    Families are concatenated in declaration order, so positional pairing
    holds within each family.
    """
    tags = list(tags)
    algs: list[str] = []
    values: list[str] = []
    scopes: list[str] = []
    for alg_tag, value_tag, scope_tag in SOFT_BINDING_TAG_FAMILIES:
        algs.extend(tag_values(tags, alg_tag))
        values.extend(tag_values(tags, value_tag))
        scopes.extend(tag_values(tags, scope_tag))
    return algs, values, scopes
