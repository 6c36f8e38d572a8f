from __future__ import annotations

import sys
from pathlib import Path

import pytest
from loguru import logger

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from blame_attribution.errors import GitCommandError
from blame_attribution.models import RepositoryRef, ViolationResource

BLAME_OUTPUT = (
    "^1a2b3c4 (Alice Smith 1700000000 +0000 1) resource \"aws_s3_bucket\" \"data\" {\n"
    "5d6e7f80 (Bob 1700500000 +0100 2)   bucket = \"data\"\n"
    "5d6e7f80 (Bob 1700500000 +0100 3)   acl    = \"public-read\"\n"
    "9abcdef0 (Carol  Jones 1701000000 -0500 4) }\n"
)


@pytest.fixture
def blame_output() -> str:
    return BLAME_OUTPUT


@pytest.fixture
def violation_payloads() -> list[dict[str, object]]:
    return [
        {
            "violationId": "BC_AWS_S3_1",
            "sourceId": "acme/infra",
            "resourceId": "aws_s3_bucket.data",
            "filePath": "/terraform/s3.tf",
            "metadataLines": [1, 3],
            "errorLines": [2],
        },
        {
            "violationId": "BC_AWS_S3_2",
            "sourceId": "acme/infra",
            "resourceId": "aws_s3_bucket.data",
            "filePath": "/terraform/s3.tf",
            "metadataLines": [2, 4],
            "errorLines": [2],
            "gitBlameMetadataId": "blame-123",
        },
        {
            "violationId": "BC_AWS_S3_3",
            "sourceId": "acme/infra",
            "resourceId": "aws_s3_bucket.data",
            "filePath": "/terraform/s3.tf",
            "metadataLines": [3, 4],
        },
        {
            "violationId": "BC_AWS_IAM_1",
            "sourceId": "acme/infra",
            "resourceId": "aws_iam_policy.admin",
            "filePath": "terraform/iam.tf",
            "metadataLines": [1, 3],
            "errorLines": [10],
        },
    ]


@pytest.fixture
def violation_model() -> ViolationResource:
    return ViolationResource(
        violation_id="BC_AWS_S3_1",
        source_id="acme/infra",
        resource_id="aws_s3_bucket.data",
        file_path="terraform/s3.tf",
        metadata_lines=[1, 3],
        error_lines=[2],
    )


@pytest.fixture
def repository() -> RepositoryRef:
    return RepositoryRef(owner="acme", name="infra")


@pytest.fixture
def fake_clone_cmd():
    """Build a ``run_cmd`` replacement that fakes ``git clone`` by creating the target."""

    def factory(fail_with: str | None = None, calls: list[list[str]] | None = None):
        def fake_run_cmd(cmd: list[str]) -> str:
            if calls is not None:
                calls.append(cmd)
            if fail_with is not None:
                raise GitCommandError(" ".join(cmd), fail_with, 128)
            if cmd[:2] == ["git", "clone"]:
                target = Path(cmd[-1])
                target.mkdir(parents=True, exist_ok=True)
                (target / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
            return ""

        return fake_run_cmd

    return factory


@pytest.fixture
def log_messages():
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(str(message)), level="DEBUG")
    yield messages
    logger.remove(handler_id)
