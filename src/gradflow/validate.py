# validate.py
from __future__ import annotations

from itertools import combinations
from typing import Dict, List

from .actions.registry import ACTIONS
from .artifacts import valid_dataset_name
from .dag import ancestors, can_run_concurrently, find_cycle
from .errors import WorkflowError
from .model import ARTIFACT_TYPES, DATASET, Job, Workflow


def _bad_name(job: Job, what: str, ref: str) -> str:
    return (
        f"Job '{job.name}' {what} names dataset {ref!r}, which is not a valid dataset name "
        f"(letters, digits, . _ - in /-separated segments)"
    )


def _check_outputs(job: Job) -> List[str]:
    problems = []
    seen = set()
    for o in job.outputs:
        if o.name in seen:
            problems.append(f"Job '{job.name}' declares output '{o.name}' twice")
        seen.add(o.name)
        if o.type not in ARTIFACT_TYPES:
            problems.append(
                f"Job '{job.name}' output '{o.name}' has unknown type {o.type!r} "
                f"(expected one of {list(ARTIFACT_TYPES)})"
            )
        elif o.type == DATASET:
            if not o.ref:
                problems.append(f"Job '{job.name}' dataset output '{o.name}' needs with.ref")
            elif ":" in o.ref:
                problems.append(
                    f"Job '{job.name}' dataset output '{o.name}' ref {o.ref!r} must not "
                    f"carry a version; versions are assigned on commit"
                )
            elif not valid_dataset_name(o.ref):
                problems.append(_bad_name(job, f"dataset output '{o.name}'", o.ref))
    return problems


def _check_inputs(wf: Workflow, job: Job) -> List[str]:
    problems = []
    seen = set()
    upstream = None
    for i in job.inputs:
        if i.name in seen:
            problems.append(f"Job '{job.name}' declares input '{i.name}' twice")
        seen.add(i.name)

        if not i.is_job_output:
            if i.dataset is None or not i.dataset.ref:
                problems.append(f"Job '{job.name}' input '{i.name}' needs a dataset ref")
            elif not valid_dataset_name(i.dataset.ref):
                problems.append(_bad_name(job, f"input '{i.name}'", i.dataset.ref))
            continue

        source = wf.job(i.job)
        if source is None:
            problems.append(
                f"Job '{job.name}' input '{i.name}' binds {i.source} but job '{i.job}' does not exist"
            )
            continue
        if source.output(i.output) is None:
            problems.append(
                f"Job '{job.name}' input '{i.name}' binds {i.source} but job '{i.job}' "
                f"declares no output '{i.output}'"
            )
            continue
        if upstream is None:
            upstream = ancestors(wf.jobs, job.name)
        if i.job not in upstream:
            problems.append(
                f"Job '{job.name}' input '{i.name}' binds {i.source} but '{i.job}' "
                f"is not in its needs"
            )
    return problems


def _check_action(job: Job) -> List[str]:
    action = ACTIONS.get(job.uses)
    if action is None:
        return [f"Job '{job.name}' uses unknown action {job.uses!r}. Known: {sorted(ACTIONS)}"]

    problems = list(action.validate(job))
    allowed = set(action.PARAMS) | set(action.OPTIONAL)
    for key in job.params:
        if key not in allowed:
            problems.append(f"Job '{job.name}' ({job.uses}) has unknown parameter with.{key}")
    return problems


def _check_dataset_clashes(wf: Workflow) -> List[str]:
    """Jobs that may run at the same time must not write the same dataset."""
    problems = []
    writers: Dict[str, List[str]] = {}
    for job in wf.jobs:
        for o in job.dataset_outputs():
            if o.ref:
                writers.setdefault(o.ref, []).append(job.name)

    for ref, names in writers.items():
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            problems.append(f"Dataset '{ref}' is written more than once by job(s) {dupes}")
        for a, b in combinations(sorted(set(names)), 2):
            if can_run_concurrently(wf.jobs, a, b):
                problems.append(
                    f"Jobs '{a}' and '{b}' may run concurrently and both write dataset '{ref}'; "
                    f"give each its own dataset"
                )
    return problems


def validate_workflow(wf: Workflow) -> List[str]:
    """Return every structural problem in `wf` (empty list means valid)."""
    problems: List[str] = []

    names = wf.job_names
    if not names:
        problems.append("Workflow defines no jobs")
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        problems.append(f"Duplicate job names found: {dupes}")

    known = set(names)
    for job in wf.jobs:
        for need in job.needs:
            if need not in known:
                problems.append(f"Job '{job.name}' needs unknown job '{need}'")
        problems.extend(_check_action(job))
        problems.extend(_check_outputs(job))
        problems.extend(_check_inputs(wf, job))

    cycle = find_cycle(wf.jobs)
    if cycle:
        problems.append("Dependency cycle: " + " -> ".join(cycle))

    problems.extend(_check_dataset_clashes(wf))
    return problems


def check_workflow(wf: Workflow) -> None:
    """Raise WorkflowError listing every problem, if there are any."""
    problems = validate_workflow(wf)
    if problems:
        raise WorkflowError(problems, workflow=wf.name)
