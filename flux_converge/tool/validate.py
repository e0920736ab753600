"""Command line tool for validating managed objects."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import Any, cast
import pathlib

from flux_converge.annotations import validate_annotations
from flux_converge.exceptions import InputException
from flux_converge.manifest import MANAGED_KINDS, parse_managed_object

from .loader import load_documents

_LOGGER = logging.getLogger(__name__)

FAIL = "[VALIDATE FAIL]"
OK = "[VALIDATE OK]"


def validate_object(doc: dict[str, Any]) -> None:
    """Admission check for a managed object document."""
    parse_managed_object(doc)
    validate_annotations((doc.get("metadata") or {}).get("annotations"))


class ValidateAction:
    """Flux-converge validate action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "validate",
                help="Validate managed objects",
                description="Check the managed objects in the YAML files under a path.",
            ),
        )
        args.add_argument(
            "path",
            help="File or directory with managed object YAML files",
            type=pathlib.Path,
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        errors = []
        for doc in await load_documents(path):
            if doc.get("kind") not in MANAGED_KINDS:
                continue
            name = (doc.get("metadata") or {}).get("name")
            try:
                validate_object(doc)
            except InputException as err:
                errors.append(f"{doc.get('kind')}/{name}: {err}")

        if errors:
            for error in errors:
                print(f"{FAIL}: {error}")
            raise InputException(f"{len(errors)} invalid object(s) in {path}")
        print(OK)
