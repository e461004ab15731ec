# actions/script.py
# script@v1: run an inline shell script inside a container image.
from __future__ import annotations

from typing import TYPE_CHECKING, List

from ..model import Job

if TYPE_CHECKING:
    from ..runner import JobContext

USES = "script@v1"
PARAMS = ("image", "script")
OPTIONAL: tuple = ()


def command(job: Job) -> List[str]:
    # errexit: the first failing line fails the job, not just the last one
    return ["sh", "-e", "-c", job.script or ""]


def validate(job: Job) -> List[str]:
    problems = []
    if not isinstance(job.image, str) or not job.image:
        problems.append(f"Job '{job.name}' ({USES}) needs with.image")
    if not isinstance(job.script, str) or not job.script.strip():
        problems.append(f"Job '{job.name}' ({USES}) needs a non-empty with.script")
    return problems


def run(job: Job, ctx: "JobContext") -> None:
    ctx.execute(job.image, command(job))
