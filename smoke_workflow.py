# smoke_workflow.py
# The StyleGAN2 download-and-extract shape with toy data: a dataset job and a
# volume job feeding a third job. Runs anywhere with a POSIX shell:
#
#   gradflow run --workflow smoke_workflow.py --backend local
#   gradflow export --workflow smoke_workflow.py
from __future__ import annotations

from gradflow import dataset, job, output, script, volume, wf

IMAGE = "alpine:latest"


def workflow():
    return wf(
        "smoke",
        job(
            "getDatabase",
            script(IMAGE, "\n".join([
                "printf 'cat-1\\ncat-2\\ncat-3\\n' > /outputs/database/cats.txt",
                "cd /outputs/database",
                "cksum cats.txt > cats.txt.sum",
            ])),
            outputs={"database": dataset("smoke-cat-db")},
        ),
        job(
            "cloneTools",
            script(IMAGE, "echo 'head -n 2' > /outputs/repo/extract.sh"),
            outputs={"repo": volume()},
        ),
        job(
            "extract",
            script(IMAGE, "\n".join([
                "sh /inputs/repo/extract.sh < /inputs/database/cats.txt > /outputs/extracted/subset.txt",
                "cat /outputs/extracted/subset.txt",
            ])),
            needs=["getDatabase", "cloneTools"],
            inputs={
                "database": output("getDatabase", "database"),
                "repo": output("cloneTools", "repo"),
            },
            outputs={"extracted": dataset("smoke-extracted")},
        ),
        instance_type="C3",
    )
