# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, List, Mapping, Set, Tuple, Union

import yaml

from .errors import DefinitionNotFound, ValidationError
from .schema import PipelineSpec

# Looked up in this order when no --workflow is given
DEFAULT_WORKFLOW_FILES = (
    "localci.yml",
    "localci.yaml",
    ".localci.yml",
    "localci.json",
    "localci_workflow.py",
)

Definition = Union[Mapping[str, Any], PipelineSpec]


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """Return every default workflow file present in `directory`, in lookup order."""
    root = Path(directory)
    return [root / name for name in DEFAULT_WORKFLOW_FILES if (root / name).is_file()]


def _load_python(path: Path) -> Definition:
    """
    The file must define either:
      - workflow() -> mapping | PipelineSpec
      - PIPELINE = mapping | PipelineSpec
    """
    module_name = f"localci_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
    except Exception as e:
        raise ValidationError(
            f"Workflow file {path.name} failed to load", [f"{type(e).__name__}: {e}"]
        ) from e

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        definition = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        definition = globals_dict["PIPELINE"]
    else:
        raise ValidationError(
            f"Workflow file {path.name} defines no pipeline",
            ["Define workflow() -> wf(...) or PIPELINE = {...}"],
        )

    if not isinstance(definition, (Mapping, PipelineSpec)):
        raise ValidationError(
            f"Workflow file {path.name} must produce a mapping or a PipelineSpec, "
            f"got {type(definition).__name__}"
        )
    return definition


# ---------------------------------------------------------------------
# Duplicate keys
# ---------------------------------------------------------------------
# Both parsers keep the last value of a repeated key; duplicates are found on
# the parse tree and reported together.

_MERGE_TAG = "tag:yaml.org,2002:merge"


def _duplicate_key(path: Tuple[str, ...], key: str) -> str:
    if path == ("jobs",):
        return f"Duplicate job id: {key!r}"
    where = ".".join(path) or "<top level>"
    return f"{where}: duplicate key {key!r}"


def _yaml_duplicates(node, path: Tuple[str, ...], problems: List[str], seen: Set[int]) -> None:
    # aliases share node objects
    if id(node) in seen:
        return
    seen.add(id(node))

    if isinstance(node, yaml.MappingNode):
        keys: Set[str] = set()
        reported: Set[str] = set()
        for key_node, value_node in node.value:
            if not isinstance(key_node, yaml.ScalarNode) or key_node.tag == _MERGE_TAG:
                _yaml_duplicates(value_node, path, problems, seen)
                continue
            key = key_node.value
            if key in keys and key not in reported:
                reported.add(key)
                problems.append(_duplicate_key(path, key))
            keys.add(key)
            _yaml_duplicates(value_node, path + (key,), problems, seen)
    elif isinstance(node, yaml.SequenceNode):
        for idx, item in enumerate(node.value):
            _yaml_duplicates(item, path + (str(idx),), problems, seen)


def _parse_yaml(text: str) -> Any:
    loader = yaml.SafeLoader(text)
    try:
        node = loader.get_single_node()
        if node is None:
            return None
        problems: List[str] = []
        _yaml_duplicates(node, (), problems, set())
        if problems:
            raise ValidationError("Invalid pipeline definition", problems)
        return loader.construct_document(node)
    finally:
        loader.dispose()


class _JSONObject(dict):
    duplicates: Tuple[str, ...] = ()


def _json_object(pairs) -> _JSONObject:
    obj = _JSONObject()
    duplicates: List[str] = []
    for key, value in pairs:
        if key in obj and key not in duplicates:
            duplicates.append(key)
        obj[key] = value
    obj.duplicates = tuple(duplicates)
    return obj


def _json_plain(value: Any, path: Tuple[str, ...], problems: List[str]) -> Any:
    if isinstance(value, dict):
        problems.extend(_duplicate_key(path, key) for key in getattr(value, "duplicates", ()))
        return {k: _json_plain(v, path + (k,), problems) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_plain(v, path + (str(i),), problems) for i, v in enumerate(value)]
    return value


def _parse_json(text: str) -> Any:
    problems: List[str] = []
    data = _json_plain(json.loads(text, object_pairs_hook=_json_object), (), problems)
    if problems:
        raise ValidationError("Invalid pipeline definition", problems)
    return data


def load_definition(path: str | Path) -> Definition:
    """
    Read a pipeline definition file.

    Supports .yml/.yaml (PyYAML safe loader), .json and .py. Format parsing
    and duplicate keys end here; structural validation happens in
    load_pipeline().
    """
    wf_path = Path(path).expanduser()
    if not wf_path.is_file():
        raise DefinitionNotFound(f"Workflow file not found: {wf_path}")

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        return _load_python(wf_path.resolve())

    text = wf_path.read_text(encoding="utf-8")
    if suffix in (".yml", ".yaml"):
        try:
            data = _parse_yaml(text)
        except yaml.YAMLError as e:
            raise ValidationError(f"Could not parse {wf_path.name}", [str(e)]) from e
    elif suffix == ".json":
        try:
            data = _parse_json(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Could not parse {wf_path.name}", [str(e)]) from e
    else:
        raise ValidationError(f"Unsupported workflow file type: {wf_path.name}", ["Use .yml, .yaml, .json or .py"])

    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValidationError(f"{wf_path.name} must contain a mapping at the top level")
    return data
