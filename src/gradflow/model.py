# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

DATASET = "dataset"
VOLUME = "volume"
ARTIFACT_TYPES = (DATASET, VOLUME)

INPUTS_ROOT = "/inputs"
OUTPUTS_ROOT = "/outputs"

_BINDING_RE = re.compile(r"^(?P<job>[^.\s]+)\.outputs\.(?P<output>[^.\s]+)$")


@dataclass(frozen=True)
class DatasetRef:
    """
    A managed dataset reference: `ref` plus an optional version selector.

    The selector follows the last ':' and is one of `latest`, `vN` or a tag.
    No selector means the latest version.
    """
    ref: str
    version: Optional[str] = None

    @classmethod
    def parse(cls, spec: str) -> DatasetRef:
        spec = spec.strip()
        name, sep, version = spec.rpartition(":")
        if not sep:
            return cls(ref=spec)
        if not name or not version:
            raise ValueError(f"Malformed dataset reference: {spec!r}")
        return cls(ref=name, version=version)

    @property
    def selector(self) -> str:
        return self.version or "latest"

    def __str__(self) -> str:
        return f"{self.ref}:{self.version}" if self.version else self.ref


@dataclass(frozen=True)
class OutputDecl:
    """An artifact a job produces at /outputs/<name>."""
    name: str
    type: str = VOLUME
    ref: Optional[str] = None  # datasets only

    @property
    def mount_path(self) -> str:
        return f"{OUTPUTS_ROOT}/{self.name}"


@dataclass(frozen=True)
class InputBinding:
    """
    An artifact a job reads at /inputs/<name>.

    Either the output of an upstream job (`job` + `output`) or an
    external managed dataset (`dataset`).
    """
    name: str
    job: Optional[str] = None
    output: Optional[str] = None
    dataset: Optional[DatasetRef] = None

    @classmethod
    def from_job_output(cls, name: str, binding: str) -> InputBinding:
        m = _BINDING_RE.match(binding.strip())
        if not m:
            raise ValueError(
                f"Input {name!r}: expected '<job>.outputs.<name>', got {binding!r}"
            )
        return cls(name=name, job=m.group("job"), output=m.group("output"))

    @property
    def is_job_output(self) -> bool:
        return self.job is not None

    @property
    def mount_path(self) -> str:
        return f"{INPUTS_ROOT}/{self.name}"

    @property
    def source(self) -> str:
        if self.is_job_output:
            return f"{self.job}.outputs.{self.output}"
        return str(self.dataset)


@dataclass(frozen=True)
class Trigger:
    """Run on pushes to any of `branches`."""
    branches: tuple = ()

    def matches(self, branch: str | None) -> bool:
        return branch is not None and branch in self.branches


@dataclass
class Job:
    """
    A workflow job: one execution unit plus its dependencies and artifacts.

    `uses` names the execution unit (script@v1, container@v1,
    git-checkout@v1); `params` is its `with:` block.
    """
    name: str
    uses: str
    params: Dict[str, Any] = field(default_factory=dict)

    needs: List[str] = field(default_factory=list)
    inputs: List[InputBinding] = field(default_factory=list)
    outputs: List[OutputDecl] = field(default_factory=list)

    instance_type: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def image(self) -> Optional[str]:
        return self.params.get("image")

    @property
    def script(self) -> Optional[str]:
        return self.params.get("script")

    @property
    def args(self) -> Optional[List[str]]:
        args = self.params.get("args")
        return [str(a) for a in args] if args is not None else None

    @property
    def url(self) -> Optional[str]:
        return self.params.get("url")

    def output(self, name: str) -> Optional[OutputDecl]:
        for o in self.outputs:
            if o.name == name:
                return o
        return None

    def input(self, name: str) -> Optional[InputBinding]:
        for i in self.inputs:
            if i.name == name:
                return i
        return None

    def dataset_outputs(self) -> List[OutputDecl]:
        return [o for o in self.outputs if o.type == DATASET]


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    trigger: Optional[Trigger] = None

    # `defaults:` block
    instance_type: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    source: Optional[Path] = field(default=None, compare=False)

    def job(self, name: str) -> Optional[Job]:
        for j in self.jobs:
            if j.name == name:
                return j
        return None

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]

    def instance_type_of(self, job: Job) -> Optional[str]:
        return job.instance_type or self.instance_type

    def env_of(self, job: Job) -> Dict[str, str]:
        env = dict(self.env)
        env.update(job.env)
        return env
