# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import WorkflowError
from .model import DATASET, DatasetRef, InputBinding, Job, OutputDecl, Trigger, Workflow

TOP_LEVEL_KEYS = ("on", "defaults", "jobs")
JOB_KEYS = ("needs", "resources", "inputs", "outputs", "uses", "with", "env")
YAML_SUFFIXES = (".yaml", ".yml")


# ----------------------------------------------------------------------
# dict -> model
# ----------------------------------------------------------------------

def _str_dict(value: Any, where: str, problems: List[str]) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        problems.append(f"{where}: expected a mapping")
        return {}
    return {str(k): str(v) for k, v in value.items()}


def _instance_type(resources: Any, where: str, problems: List[str]) -> Optional[str]:
    if resources is None:
        return None
    if not isinstance(resources, dict):
        problems.append(f"{where}.resources: expected a mapping")
        return None
    value = resources.get("instance-type")
    return str(value) if value is not None else None


def _parse_trigger(on: Any, problems: List[str]) -> Optional[Trigger]:
    if on is None:
        return None
    try:
        only = on["github"]["branches"]["only"]
    except (KeyError, TypeError):
        problems.append("on: expected github.branches.only")
        return None
    branches = [only] if isinstance(only, str) else list(only or [])
    return Trigger(branches=tuple(str(b) for b in branches))


def _parse_input(job: str, name: str, value: Any, problems: List[str]) -> Optional[InputBinding]:
    where = f"jobs.{job}.inputs.{name}"
    if isinstance(value, str):
        try:
            return InputBinding.from_job_output(name, value)
        except ValueError as e:
            problems.append(f"{where}: {e}")
            return None

    if isinstance(value, dict):
        if value.get("type") != DATASET:
            problems.append(f"{where}: only dataset inputs can reference external artifacts")
            return None
        ref = (value.get("with") or {}).get("ref")
        if not ref:
            problems.append(f"{where}: dataset input needs with.ref")
            return None
        try:
            return InputBinding(name=name, dataset=DatasetRef.parse(str(ref)))
        except ValueError as e:
            problems.append(f"{where}: {e}")
            return None

    problems.append(f"{where}: expected '<job>.outputs.<name>' or a dataset reference")
    return None


def _parse_output(job: str, name: str, value: Any, problems: List[str]) -> Optional[OutputDecl]:
    where = f"jobs.{job}.outputs.{name}"
    if not isinstance(value, dict) or "type" not in value:
        problems.append(f"{where}: expected a mapping with a type")
        return None
    ref = (value.get("with") or {}).get("ref")
    return OutputDecl(name=name, type=str(value["type"]), ref=str(ref) if ref else None)


def _parse_job(name: str, spec: Any, problems: List[str]) -> Optional[Job]:
    where = f"jobs.{name}"
    if not isinstance(spec, dict):
        problems.append(f"{where}: expected a mapping")
        return None

    unknown = sorted(set(spec) - set(JOB_KEYS))
    if unknown:
        problems.append(f"{where}: unknown keys {unknown}")

    uses = spec.get("uses")
    if not isinstance(uses, str) or not uses:
        problems.append(f"{where}: needs 'uses'")
        uses = ""

    params = spec.get("with") or {}
    if not isinstance(params, dict):
        problems.append(f"{where}.with: expected a mapping")
        params = {}

    needs = spec.get("needs") or []
    if isinstance(needs, str):
        needs = [needs]
    if not isinstance(needs, list):
        problems.append(f"{where}.needs: expected a list of job names")
        needs = []

    inputs: List[InputBinding] = []
    raw_inputs = spec.get("inputs") or {}
    if not isinstance(raw_inputs, dict):
        problems.append(f"{where}.inputs: expected a mapping")
        raw_inputs = {}
    for input_name, value in raw_inputs.items():
        binding = _parse_input(name, str(input_name), value, problems)
        if binding is not None:
            inputs.append(binding)

    outputs: List[OutputDecl] = []
    raw_outputs = spec.get("outputs") or {}
    if not isinstance(raw_outputs, dict):
        problems.append(f"{where}.outputs: expected a mapping")
        raw_outputs = {}
    for output_name, value in raw_outputs.items():
        decl = _parse_output(name, str(output_name), value, problems)
        if decl is not None:
            outputs.append(decl)

    return Job(
        name=name,
        uses=uses,
        params=dict(params),
        needs=[str(n) for n in needs],
        inputs=inputs,
        outputs=outputs,
        instance_type=_instance_type(spec.get("resources"), where, problems),
        env=_str_dict(spec.get("env"), f"{where}.env", problems),
    )


def workflow_from_dict(data: Any, name: str, source: Optional[Path] = None) -> Workflow:
    """
    Build a Workflow from the parsed YAML structure.

    Raises WorkflowError listing every shape problem found.
    """
    if not isinstance(data, dict):
        raise WorkflowError(["top level: expected a mapping"], workflow=name)

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data["on"] = data.pop(True)

    problems: List[str] = []
    unknown = sorted(str(k) for k in set(data) - set(TOP_LEVEL_KEYS))
    if unknown:
        problems.append(f"top level: unknown keys {unknown}")

    trigger = _parse_trigger(data.get("on"), problems)

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        problems.append("defaults: expected a mapping")
        defaults = {}

    jobs: List[Job] = []
    raw_jobs = data.get("jobs")
    if not isinstance(raw_jobs, dict) or not raw_jobs:
        problems.append("jobs: expected a non-empty mapping")
        raw_jobs = {}
    for job_name, spec in raw_jobs.items():
        job = _parse_job(str(job_name), spec, problems)
        if job is not None:
            jobs.append(job)

    wf = Workflow(
        name=name,
        jobs=jobs,
        trigger=trigger,
        instance_type=_instance_type(defaults.get("resources"), "defaults", problems),
        env=_str_dict(defaults.get("env"), "defaults.env", problems),
        source=source,
    )
    if problems:
        raise WorkflowError(problems, workflow=name)
    return wf


# ----------------------------------------------------------------------
# model -> dict (export)
# ----------------------------------------------------------------------

def job_to_dict(job: Job) -> Dict[str, Any]:
    """
    Convert a Job model to the YAML job structure.
    This is the reverse of _parse_job().
    """
    out: Dict[str, Any] = {}
    if job.needs:
        out["needs"] = list(job.needs)
    if job.instance_type:
        out["resources"] = {"instance-type": job.instance_type}
    if job.env:
        out["env"] = dict(job.env)
    if job.inputs:
        inputs: Dict[str, Any] = {}
        for i in job.inputs:
            if i.is_job_output:
                inputs[i.name] = i.source
            else:
                inputs[i.name] = {"type": DATASET, "with": {"ref": str(i.dataset)}}
        out["inputs"] = inputs
    if job.outputs:
        outputs: Dict[str, Any] = {}
        for o in job.outputs:
            decl: Dict[str, Any] = {"type": o.type}
            if o.ref:
                decl["with"] = {"ref": o.ref}
            outputs[o.name] = decl
        out["outputs"] = outputs
    out["uses"] = job.uses
    out["with"] = dict(job.params)
    return out


def workflow_to_dict(wf: Workflow) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if wf.trigger is not None:
        only: Any = list(wf.trigger.branches)
        if len(only) == 1:
            only = only[0]
        out["on"] = {"github": {"branches": {"only": only}}}
    defaults: Dict[str, Any] = {}
    if wf.instance_type:
        defaults["resources"] = {"instance-type": wf.instance_type}
    if wf.env:
        defaults["env"] = dict(wf.env)
    if defaults:
        out["defaults"] = defaults
    out["jobs"] = {j.name: job_to_dict(j) for j in wf.jobs}
    return out


class _BlockDumper(yaml.SafeDumper):
    """SafeDumper that writes multi-line strings (scripts) as `|-` blocks."""


def _str_representer(dumper: yaml.SafeDumper, data: str):
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_BlockDumper.add_representer(str, _str_representer)


def dump_workflow(wf: Workflow) -> str:
    return yaml.dump(
        workflow_to_dict(wf),
        Dumper=_BlockDumper,
        sort_keys=False,
        default_flow_style=False,
        width=120,
    )


# ----------------------------------------------------------------------
# Loading from files
# ----------------------------------------------------------------------

def _load_python_workflow(wf_path: Path) -> Workflow:
    module_name = f"gradflow_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    wf = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            wf = globals_dict["workflow"]()
        except TypeError as e:
            if "required positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from gradflow import wf, job, script` then "
                    "`def workflow(): return wf('name', job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]

    if not isinstance(wf, Workflow):
        raise TypeError(
            "Workflow file must return/define a Workflow. "
            "Define workflow() -> Workflow or WORKFLOW = wf(...)."
        )
    wf.source = wf_path
    return wf


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a YAML file (Gradient format) or a python file.

    A python file must define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        try:
            with wf_path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise WorkflowError([f"YAML parse error: {e}"], workflow=wf_path.stem) from e
        return workflow_from_dict(data, name=wf_path.stem, source=wf_path)

    if wf_path.suffix == ".py":
        return _load_python_workflow(wf_path)

    raise ValueError(f"Workflow must be a .yaml/.yml or .py file, got: {wf_path.name}")


def find_workflow_files(directory: str | Path) -> List[Path]:
    """YAML workflow definitions in `directory` (non-recursive), sorted."""
    d = Path(directory)
    if not d.is_dir():
        return []
    return sorted(p for p in d.iterdir() if p.is_file() and p.suffix in YAML_SUFFIXES)
