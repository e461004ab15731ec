# actions/container.py
# container@v1: run a container image with a literal argument vector.
from __future__ import annotations

from typing import TYPE_CHECKING, List

from ..model import Job

if TYPE_CHECKING:
    from ..runner import JobContext

USES = "container@v1"
PARAMS = ("image", "args")
OPTIONAL: tuple = ()


def validate(job: Job) -> List[str]:
    problems = []
    if not isinstance(job.image, str) or not job.image:
        problems.append(f"Job '{job.name}' ({USES}) needs with.image")
    args = job.params.get("args")
    if not isinstance(args, list) or not args:
        problems.append(f"Job '{job.name}' ({USES}) needs a non-empty with.args list")
    return problems


def run(job: Job, ctx: "JobContext") -> None:
    ctx.execute(job.image, job.args or [])
