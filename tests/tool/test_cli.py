"""Tests for the flux-converge command line tool."""

import pathlib

import pytest
import yaml

from flux_converge.tool.flux_converge import main

GROUP = """\
---
apiVersion: fluxcd.controlplane.io/v1
kind: ResourceGroup
metadata:
  name: apps
  namespace: default
spec:
  dependsOn:
    - apiVersion: v1
      kind: Namespace
      name: apps
  inputs:
    - tenant: team1
    - tenant: team2
  resources:
    - apiVersion: v1
      kind: ConfigMap
      metadata:
        name: << inputs.tenant >>-settings
        namespace: apps
      data:
        tenant: << inputs.tenant >>
"""

NAMESPACE = """\
---
apiVersion: v1
kind: Namespace
metadata:
  name: apps
"""


def _write(path: pathlib.Path, *docs: str) -> pathlib.Path:
    path.write_text("".join(docs))
    return path


def test_validate(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    main(["validate", str(_write(tmp_path / "group.yaml", GROUP, NAMESPACE))])
    assert capsys.readouterr().out == "[VALIDATE OK]\n"


def test_validate_failure(
    tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    invalid = GROUP.replace(
        "  namespace: default\n",
        "  namespace: default\n"
        "  annotations:\n"
        "    fluxcd.controlplane.io/reconcileEvery: soon\n",
        1,
    )
    with pytest.raises(SystemExit, match="1"):
        main(["validate", str(_write(tmp_path / "group.yaml", invalid))])
    captured = capsys.readouterr()
    assert captured.out.startswith("[VALIDATE FAIL]: ResourceGroup/apps: ")
    assert "fluxcd.controlplane.io/reconcileEvery" in captured.out
    assert "flux-converge error: " in captured.err


def test_apply(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test a resource group converges once its dependency exists."""
    main(["apply", str(_write(tmp_path / "group.yaml", GROUP, NAMESPACE))])
    lines = capsys.readouterr().out.split("\n")
    assert lines[0].split() == ["NAMESPACE", "NAME", "READY", "REASON", "MESSAGE"]
    assert lines[1].split()[:4] == ["default", "apps", "True", "ReconciliationSucceeded"]
    assert "Reconciliation finished in" in lines[1]


def test_apply_yaml(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    main(
        [
            "apply",
            "--output",
            "yaml",
            str(_write(tmp_path / "group.yaml", GROUP, NAMESPACE)),
        ]
    )
    docs = list(yaml.safe_load_all(capsys.readouterr().out))
    assert len(docs) == 1
    status = docs[0]["status"]
    assert [entry["id"] for entry in status["inventory"]["entries"]] == [
        "apps_team1-settings__ConfigMap",
        "apps_team2-settings__ConfigMap",
    ]
    ready = next(c for c in status["conditions"] if c["type"] == "Ready")
    assert ready["status"] == "True"


def test_apply_dependency_not_ready(
    tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """Test the retry of a missing dependency is not waited on."""
    main(
        [
            "apply",
            "--settle-timeout",
            "0",
            str(_write(tmp_path / "group.yaml", GROUP)),
        ]
    )
    lines = capsys.readouterr().out.split("\n")
    assert lines[1].split()[:4] == ["default", "apps", "False", "DependencyNotReady"]
    assert "Retrying dependency check" in lines[1]


def test_apply_invalid_input(
    tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit, match="1"):
        main(["apply", str(_write(tmp_path / "group.yaml", "- not\n- a mapping\n"))])
    assert "was not a dictionary" in capsys.readouterr().err
