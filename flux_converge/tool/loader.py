"""Loading of resource documents from YAML files."""

import logging
import pathlib
from typing import Any

import aiofiles
from aiofiles.ospath import isdir
import yaml

from flux_converge.exceptions import InputException

_LOGGER = logging.getLogger(__name__)

IGNORE_DIRS = {"venv", ".venv", ".git"}


def _yaml_files(path: pathlib.Path) -> list[pathlib.Path]:
    return sorted(
        p
        for p in path.rglob("*")
        if p.suffix in (".yaml", ".yml")
        and not IGNORE_DIRS.intersection(p.relative_to(path).parts)
    )


async def load_documents(path: pathlib.Path) -> list[dict[str, Any]]:
    """Load every YAML document in a file or in the files under a directory.

    Empty documents are ignored. A document that is not a mapping raises an
    InputException naming the file.
    """
    files = _yaml_files(path) if await isdir(path) else [path]
    docs: list[dict[str, Any]] = []
    for file in files:
        _LOGGER.debug("Loading %s", file)
        try:
            async with aiofiles.open(str(file)) as fd:
                content = await fd.read()
        except OSError as err:
            raise InputException(f"Unable to read {file}: {err}") from err
        try:
            file_docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            raise InputException(f"`{file}` failed to parse as yaml: {err}") from err
        for doc in file_docs:
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise InputException(
                    f"`{file}` was not a dictionary: {type(doc)}: {doc}"
                )
            docs.append(doc)
    return docs
