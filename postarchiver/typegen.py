"""TypeScript bindings for the canonical model.

``render_bindings`` walks ``models.EXPORTED_TYPES`` and returns one ``.ts``
module per exported name plus ``index.ts``; ``export_bindings`` writes them
together with a ``package.json`` manifest. Output depends only on the model
and the version string, so repeated runs are byte-identical.
"""

import json
import logging
import os
import re
import subprocess
import typing
from dataclasses import fields, is_dataclass
from datetime import datetime

from .constants import SCHEMA_VERSION
from .models import EXPORTED_TYPES

logger = logging.getLogger("PostArchiver")

PACKAGE_NAME = "@post-archiver/types"
PACKAGE_LICENSE = "BSD-3-Clause"
DEFAULT_VERSION = "0.0.0"

HEADER = "// This file is generated automatically. Do not edit it by hand."

JSON_VALUE = "JsonValue"
JSON_VALUE_BODY = (
    "export type JsonValue = number | string | boolean | Array<JsonValue> "
    "| { [key in string]?: JsonValue } | null;"
)

_semver_re = re.compile(r"v?(\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?)")

_PRIMITIVES = {
    str: "string",
    int: "number",
    float: "number",
    bool: "boolean",
    datetime: "string",
    type(None): "null",
}


def _is_newtype(tp):
    return callable(tp) and hasattr(tp, "__supertype__")


def _is_optional(tp):
    return typing.get_origin(tp) is typing.Union and type(None) in typing.get_args(tp)


def ts_type(tp, names, refs):
    """Spell ``tp`` in TypeScript, recording exported names it uses in ``refs``."""
    if tp is typing.Any:
        refs.add(JSON_VALUE)
        return JSON_VALUE
    name = names.get(tp)
    if name is not None:
        refs.add(name)
        return name
    if _is_newtype(tp):
        return ts_type(tp.__supertype__, names, refs)
    if tp in _PRIMITIVES:
        return _PRIMITIVES[tp]

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)
    if origin is list:
        return f"Array<{ts_type(args[0], names, refs)}>"
    if origin is dict:
        return f"{{ [key in {ts_type(args[0], names, refs)}]?: {ts_type(args[1], names, refs)} }}"
    if origin is typing.Union:
        return " | ".join(ts_type(arg, names, refs) for arg in args)
    raise TypeError(f"No TypeScript mapping for {tp!r}")


def _interface_body(name, cls, names, refs):
    hints = typing.get_type_hints(cls)
    lines = [f"export interface {name} {{"]
    for f in fields(cls):
        tp = hints[f.name]
        optional = False
        if _is_optional(tp):
            optional = True
            inner = [arg for arg in typing.get_args(tp) if arg is not type(None)]
            spelled = " | ".join(ts_type(arg, names, refs) for arg in inner) + " | null"
        else:
            optional = bool(f.metadata.get("omit_empty"))
            spelled = ts_type(tp, names, refs)
        lines.append(f"  {f.name}{'?' if optional else ''}: {spelled};")
    lines.append("}")
    return "\n".join(lines)


def render_type(name, obj, names=None):
    names = _export_names() if names is None else names
    refs = set()
    if _is_newtype(obj):
        body = f"export type {name} = {ts_type(obj.__supertype__, names, refs)};"
    elif is_dataclass(obj):
        body = _interface_body(name, obj, names, refs)
    elif typing.get_origin(obj) is typing.Union:
        spelled = " | ".join(ts_type(arg, names, refs) for arg in typing.get_args(obj))
        body = f"export type {name} = {spelled};"
    else:
        raise TypeError(f"Cannot export {name}: {obj!r}")

    refs.discard(name)
    imports = [f'import type {{ {ref} }} from "./{ref}";' for ref in sorted(refs)]
    parts = [HEADER]
    if imports:
        parts.append("\n".join(imports))
    parts.append(body)
    return "\n\n".join(parts) + "\n"


def render_index(exported, version):
    lines = [HEADER, f"// Build Tags: v{version}", ""]
    lines.extend(f"export * from './{name}';" for name in sorted(exported))
    return "\n".join(lines) + "\n"


def render_manifest(version):
    manifest = {
        "name": PACKAGE_NAME,
        "version": version,
        "types": "./index.ts",
        "license": PACKAGE_LICENSE,
        "postArchiver": {"schemaVersion": SCHEMA_VERSION},
    }
    return json.dumps(manifest, indent=2, ensure_ascii=False) + "\n"


def _export_names():
    return {obj: name for name, obj in EXPORTED_TYPES}


def render_bindings(version=DEFAULT_VERSION):
    """Return ``{filename: text}`` for every generated TypeScript module."""
    names = _export_names()
    out = {f"{JSON_VALUE}.ts": "\n\n".join([HEADER, JSON_VALUE_BODY]) + "\n"}
    for name, obj in EXPORTED_TYPES:
        out[f"{name}.ts"] = render_type(name, obj, names)
    exported = [filename[: -len(".ts")] for filename in out]
    out["index.ts"] = render_index(exported, version)
    return dict(sorted(out.items()))


def parse_version(tag):
    match = _semver_re.search(tag or "")
    return match.group(1) if match else DEFAULT_VERSION


def resolve_version(cwd=None):
    """Semantic version of the nearest git tag, or ``0.0.0``."""
    try:
        result = subprocess.run(
            ["git", "describe", "--tags", "--abbrev=0"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        logger.debug("git unavailable, using version %s: %s", DEFAULT_VERSION, exc)
        return DEFAULT_VERSION
    if result.returncode != 0:
        logger.debug("no git tag found, using version %s", DEFAULT_VERSION)
        return DEFAULT_VERSION
    return parse_version(result.stdout.strip())


def export_bindings(out_dir, version=None):
    """Write the bindings and ``package.json`` into ``out_dir``; return written paths."""
    version = version or resolve_version()
    files = render_bindings(version)
    files["package.json"] = render_manifest(version)

    os.makedirs(out_dir, exist_ok=True)
    written = []
    for filename in sorted(files):
        path = os.path.join(out_dir, filename)
        with open(path, "w", encoding="utf-8", newline="\n") as f:
            f.write(files[filename])
        written.append(path)
    logger.info("Exported %d binding files (v%s) to %s", len(written), version, out_dir)
    return written
