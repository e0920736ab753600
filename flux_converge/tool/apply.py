"""Command line tool for converging resource groups against an in-memory store."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from datetime import timedelta
from typing import Any, cast
import pathlib

from flux_converge import conditions
from flux_converge.config import ManagerConfig
from flux_converge.controller import Manager, ResourceGroupReconciler
from flux_converge.events import MemoryEventRecorder
from flux_converge.manifest import MANAGED_KINDS, ResourceGroup
from flux_converge.store import InMemoryStore

from .format import PrintFormatter, StructFormatter, YamlFormatter
from .loader import load_documents
from .validate import validate_object

_LOGGER = logging.getLogger(__name__)


def status_row(doc: dict[str, Any]) -> dict[str, str]:
    """Summarize the Ready condition of a managed object."""
    obj = ResourceGroup.from_document(doc)
    ready = conditions.get(obj, conditions.READY_CONDITION)
    return {
        "namespace": obj.namespace,
        "name": obj.name,
        "ready": ready.status if ready else "Unknown",
        "reason": ready.reason if ready else "",
        "message": (ready.message if ready else "").split("\n", 1)[0],
    }


class ApplyAction:
    """Flux-converge apply action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "apply",
                help="Converge ResourceGroups in an in-memory cluster",
                description=(
                    "Load ResourceGroups and the resources they depend on, "
                    "reconcile them until settled and print their status."
                ),
            ),
        )
        args.add_argument(
            "path",
            help="File or directory with YAML files",
            type=pathlib.Path,
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["table", "yaml"],
            default="table",
            help="Output format of the command",
        )
        args.add_argument(
            "--settle-timeout",
            type=float,
            default=30.0,
            help="Seconds ahead to wait for scheduled retries before exiting",
        )
        args.add_argument(
            "--max-concurrent",
            type=int,
            default=ManagerConfig.max_concurrent_reconciles,
            help="Maximum number of concurrent reconciles",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        output: str,
        settle_timeout: float,
        max_concurrent: int,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        store = InMemoryStore()
        for kind in MANAGED_KINDS:
            store.add_validator(kind, validate_object)
        for doc in await load_documents(path):
            store.add_object(doc)

        events = MemoryEventRecorder()
        manager = Manager(
            store,
            [ResourceGroupReconciler(store, events)],
            ManagerConfig(max_concurrent_reconciles=max_concurrent),
        )
        manager.start()
        try:
            await manager.run_until_settled(timedelta(seconds=settle_timeout))
        finally:
            await manager.close()

        docs = await store.list(kind=ResourceGroup.kind)
        formatter: StructFormatter
        if output == "yaml":
            formatter = YamlFormatter()
            data: list[dict[str, Any]] = [
                {
                    "apiVersion": doc["apiVersion"],
                    "kind": doc["kind"],
                    "metadata": {
                        "name": doc["metadata"]["name"],
                        "namespace": doc["metadata"].get("namespace", ""),
                    },
                    "status": doc.get("status", {}),
                }
                for doc in docs
            ]
        else:
            formatter = PrintFormatter()
            data = [status_row(doc) for doc in docs]
        formatter.print(data)
