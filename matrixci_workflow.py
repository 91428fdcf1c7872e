# matrixci_workflow.py
# Build and test on every push / pull request across linux, windows and macos.
# Tests on macos read other processes' memory, which needs root there.
from __future__ import annotations

from matrixci.dsl import checkout, elevate_on, job, matrix, sh


def policy():
    return matrix("os", ["linux", "windows", "macos"]).policy(
        job(
            "build",
            checkout(),
            sh("Build", "cargo build --verbose --all-targets"),
            *elevate_on("macos", "Run tests", "cargo test --verbose", preserve=["PATH"]),
        ),
        on=["push", "pull_request"],
        fail_fast=False,
        env={"CARGO_TERM_COLOR": "always"},
        elevation_platform="macos",
    )
