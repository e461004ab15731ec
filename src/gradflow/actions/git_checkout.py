# actions/git_checkout.py
# git-checkout@v1: clone a repository into the job's single output.
from __future__ import annotations

import subprocess
from typing import TYPE_CHECKING, List

from ..errors import JobFailure
from ..git_facts import git
from ..model import Job

if TYPE_CHECKING:
    from ..runner import JobContext

USES = "git-checkout@v1"
PARAMS = ("url",)
OPTIONAL = ("ref",)


def validate(job: Job) -> List[str]:
    problems = []
    if not isinstance(job.url, str) or not job.url:
        problems.append(f"Job '{job.name}' ({USES}) needs with.url")
    if len(job.outputs) != 1:
        problems.append(
            f"Job '{job.name}' ({USES}) must declare exactly one output, "
            f"got {len(job.outputs)}"
        )
    return problems


def run(job: Job, ctx: "JobContext") -> None:
    (dest,) = ctx.output_dirs.values()
    ref = job.params.get("ref")
    display = f"git clone {job.url}" + (f" && git checkout {ref}" if ref else "")

    ctx.log(f"$ {display}")
    try:
        git.clone(job.url, dest, ref=ref)
    except subprocess.CalledProcessError as e:
        stderr = e.stderr or ""
        ctx.log(stderr)
        raise JobFailure(
            job=job.name,
            exit_code=e.returncode,
            cmd=display,
            log_path=ctx.log_path,
            tail=stderr[-4000:],
        )
    ctx.log(f"checked out into {dest}")
