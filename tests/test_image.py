"""Tests for image."""

from pathlib import Path

import pytest

from kots_local.config import RegistryOptions
from kots_local.exceptions import InputException
from kots_local.image import ImageRewriter, extract_images, parse_image, rewrite_image
from kots_local.manifest import Image

TESTDATA_DIR = Path("tests/testdata/app")

REGISTRY = RegistryOptions(
    endpoint="registry.example.com",
    namespace="myapp",
    username="user",
    password="pass",
)


@pytest.mark.parametrize(
    ("ref", "expected"),
    [
        ("nginx", ("nginx", None, None)),
        ("nginx:1.25", ("nginx", "1.25", None)),
        ("library/nginx:latest", ("library/nginx", "latest", None)),
        ("localhost:5000/app", ("localhost:5000/app", None, None)),
        ("localhost:5000/app:v1", ("localhost:5000/app", "v1", None)),
        ("quay.io/org/helper@sha256:abc", ("quay.io/org/helper", None, "sha256:abc")),
        ("quay.io/org/helper:1@sha256:abc", ("quay.io/org/helper", "1", "sha256:abc")),
    ],
)
def test_parse_image(ref: str, expected: tuple[str, str | None, str | None]) -> None:
    """Test splitting image references."""
    assert parse_image(ref) == expected


@pytest.mark.parametrize(
    ("registry", "ref", "expected"),
    [
        (
            REGISTRY,
            "nginx:1.25",
            Image(name="nginx", new_name="registry.example.com/myapp/nginx"),
        ),
        (
            RegistryOptions(endpoint="registry.example.com"),
            "docker.io/library/redis@sha256:123",
            Image(
                name="docker.io/library/redis",
                new_name="registry.example.com/redis",
            ),
        ),
        (
            REGISTRY,
            "localhost:5000/app:v1@sha256:123",
            Image(name="localhost:5000/app", new_name="registry.example.com/myapp/app"),
        ),
    ],
    ids=["namespace", "no-namespace", "tag-and-digest"],
)
def test_rewrite_image(registry: RegistryOptions, ref: str, expected: Image) -> None:
    """Test building an image rule for a private registry."""
    assert rewrite_image(ref, registry) == expected


def test_extract_images() -> None:
    """Test finding images anywhere in a document."""
    doc = {
        "kind": "CronJob",
        "spec": {
            "jobTemplate": {
                "spec": {
                    "template": {
                        "spec": {
                            "initContainers": [{"image": "busybox"}],
                            "containers": [{"image": "alpine"}, {"image": "busybox"}],
                        }
                    }
                }
            }
        },
    }
    assert extract_images(doc) == ["busybox", "alpine"]


def test_image_rewriter() -> None:
    """Test collecting rules and patch targets from the test application."""
    rewriter = ImageRewriter(REGISTRY)
    for path in sorted(TESTDATA_DIR.glob("*.yaml")):
        rewriter.visit_content(path.name, path.read_bytes())

    assert rewriter.images == [
        Image(name="nginx", new_name="registry.example.com/myapp/nginx"),
        Image(name="quay.io/org/helper", new_name="registry.example.com/myapp/helper"),
    ]
    assert [(doc.kind, doc.metadata.name) for doc in rewriter.docs] == [
        ("Deployment", "web")
    ]


def test_image_rewriter_keeps_tags() -> None:
    """Test one rule per image name that leaves each reference's tag alone."""
    rewriter = ImageRewriter(REGISTRY)
    for name, ref in (("cache", "redis:6"), ("queue", "redis:7")):
        rewriter.visit(
            name,
            {
                "kind": "Deployment",
                "metadata": {"name": name},
                "spec": {"template": {"spec": {"containers": [{"image": ref}]}}},
            },
        )
    assert rewriter.images == [
        Image(name="redis", new_name="registry.example.com/myapp/redis")
    ]
    assert [doc.metadata.name for doc in rewriter.docs] == ["cache", "queue"]


def test_image_rewriter_pod_and_cronjob() -> None:
    """Test pods and cron jobs are patch targets like other workloads."""
    rewriter = ImageRewriter(REGISTRY)
    rewriter.visit(
        "pod.yaml",
        {"kind": "Pod", "metadata": {"name": "debug"}, "spec": {"containers": [{"image": "busybox"}]}},
    )
    rewriter.visit(
        "cronjob.yaml",
        {
            "kind": "CronJob",
            "metadata": {"name": "backup"},
            "spec": {
                "jobTemplate": {
                    "spec": {"template": {"spec": {"containers": [{"image": "private/app:1"}]}}}
                }
            },
        },
    )
    assert [(doc.kind, doc.metadata.name) for doc in rewriter.docs] == [
        ("Pod", "debug"),
        ("CronJob", "backup"),
    ]
    assert [image.name for image in rewriter.images] == ["busybox", "private/app"]


def test_image_rewriter_no_registry() -> None:
    """Test no rules are collected without a registry."""
    rewriter = ImageRewriter(RegistryOptions())
    rewriter.visit_content("deployment.yaml", (TESTDATA_DIR / "deployment.yaml").read_bytes())
    assert not rewriter.images
    assert not rewriter.docs


def test_image_rewriter_invalid_image() -> None:
    """Test an image value that is not a string."""
    rewriter = ImageRewriter(REGISTRY)
    with pytest.raises(InputException, match="Error extracting images from document 'app'"):
        rewriter.visit(
            "app",
            {
                "kind": "Deployment",
                "spec": {"containers": [{"image": {"repository": "busybox", "tag": 16}}]},
            },
        )
