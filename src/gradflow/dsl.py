# src/gradflow/dsl.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .model import DATASET, VOLUME, DatasetRef, InputBinding, Job, OutputDecl, Trigger, Workflow

InputSource = Union[str, DatasetRef]
OutputKind = Union[str, DatasetRef]


# ---------------------------------------------------------------------
# Execution units
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Unit:
    """What a job runs: the `uses:` action and its `with:` parameters."""
    uses: str
    params: Dict[str, Any] = field(default_factory=dict)


def script(image: str, body: str) -> Unit:
    """Run a multi-line shell script inside `image`."""
    return Unit("script@v1", {"script": body, "image": image})


def container(image: str, *args: str) -> Unit:
    """Run `image` with a literal argument vector."""
    return Unit("container@v1", {"args": [str(a) for a in args], "image": image})


def git_checkout(url: str, *, ref: str | None = None) -> Unit:
    """Clone a repository into the job's single output."""
    params: Dict[str, Any] = {"url": url}
    if ref:
        params["ref"] = ref
    return Unit("git-checkout@v1", params)


# ---------------------------------------------------------------------
# Artifact helpers
# ---------------------------------------------------------------------

def dataset(ref: str) -> DatasetRef:
    """A managed dataset, e.g. dataset("my-images") or dataset("my-images:v2")."""
    return DatasetRef.parse(ref)


def volume() -> str:
    """An ephemeral job-scoped output."""
    return VOLUME


def output(job_name: str, name: str) -> str:
    """Bind to another job's output: output("clone", "repo") -> 'clone.outputs.repo'."""
    return f"{job_name}.outputs.{name}"


def _inputs(inputs: Optional[Mapping[str, InputSource]]) -> List[InputBinding]:
    out: List[InputBinding] = []
    for name, source in (inputs or {}).items():
        if isinstance(source, DatasetRef):
            out.append(InputBinding(name=name, dataset=source))
        else:
            out.append(InputBinding.from_job_output(name, source))
    return out


def _outputs(outputs: Optional[Mapping[str, OutputKind]]) -> List[OutputDecl]:
    out: List[OutputDecl] = []
    for name, kind in (outputs or {}).items():
        if isinstance(kind, DatasetRef):
            out.append(OutputDecl(name=name, type=DATASET, ref=str(kind)))
        else:
            out.append(OutputDecl(name=name, type=str(kind)))
    return out


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    unit: Unit,
    *,
    needs: Optional[Sequence[str]] = None,
    inputs: Optional[Mapping[str, InputSource]] = None,
    outputs: Optional[Mapping[str, OutputKind]] = None,
    instance_type: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
) -> Job:
    if not isinstance(unit, Unit):
        raise TypeError(f"job({name!r}) needs a unit: script(...), container(...) or git_checkout(...)")

    return Job(
        name=name,
        uses=unit.uses,
        params=dict(unit.params),
        needs=list(needs or []),
        inputs=_inputs(inputs),
        outputs=_outputs(outputs),
        instance_type=instance_type,
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._unit: Optional[Unit] = None
        self._needs: list[str] = []
        self._inputs: dict[str, InputSource] = {}
        self._outputs: dict[str, OutputKind] = {}
        self._env: dict[str, str] = {}
        self._instance_type: Optional[str] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs(self, unit: Unit):
        self._unit = unit
        return self

    def with_input(self, name: str, source: InputSource):
        self._inputs[name] = source
        return self

    def with_output(self, name: str, kind: OutputKind):
        self._outputs[name] = kind
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def on_instance(self, instance_type: str):
        self._instance_type = instance_type
        return self

    def build(self) -> Job:
        if self._unit is None:
            raise ValueError(f"Job '{self.name}' has nothing to run")
        return job(
            self.name,
            self._unit,
            needs=self._needs,
            inputs=self._inputs,
            outputs=self._outputs,
            instance_type=self._instance_type,
            env=self._env,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('train').runs(script(...)).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job,
    branches: Optional[Sequence[str]] = None,
    instance_type: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf("name", job(...), job(...)).

    Users can write:
        from gradflow import wf, job, script

        def workflow():
            return wf(
                "my-workflow",
                job(...),
                job(...),
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf("my-workflow", job(...), job(...))
    """
    return Workflow(
        name=name,
        jobs=list(jobs),
        trigger=Trigger(branches=tuple(branches)) if branches else None,
        instance_type=instance_type,
        env={k: str(v) for k, v in (env or {}).items()},
    )
