"""Tests for the render pass."""

from pathlib import Path
import random

import pytest
import yaml

from kots_local.config import RegistryOptions, RenderOptions
from kots_local.exceptions import AlreadyExistsError, InputException
from kots_local.manifest import Image
from kots_local.renderer import read_upstream, render
from kots_local.template import StaticContext

TESTDATA_DIR = Path("tests/testdata/app")

REGISTRY = RegistryOptions(
    endpoint="registry.example.com",
    namespace="myapp",
    username="user",
    password="pass",
)


def read_yaml(path: Path) -> dict:
    return yaml.safe_load(path.read_text())


async def test_read_upstream() -> None:
    """Test reading and evaluating the application files."""
    files = await read_upstream(TESTDATA_DIR, StaticContext(rng=random.Random(1)))
    assert [f.path for f in files] == [
        "README.md",
        "config.yaml",
        "deployment.yaml",
        "excluded.yaml",
        "service.yaml",
        "templated.yaml",
    ]
    templated = yaml.safe_load(files[-1].content)
    assert templated["data"] == {
        "greeting": "HELLO",
        "encoded": "a290cw==",
        "helm": "{{ .Values.untouched }}",
    }


async def test_read_upstream_not_a_directory() -> None:
    """Test reading from a path that is not a directory."""
    with pytest.raises(InputException, match="not a directory"):
        await read_upstream(TESTDATA_DIR / "does-not-exist")


async def test_render_with_registry(tmp_path: Path) -> None:
    """Test rendering the application with a private registry."""
    options = RenderOptions(
        render_dir=tmp_path / "rendered", registry=REGISTRY, namespace="default"
    )
    result = await render(TESTDATA_DIR, options)

    assert result.base_dir == tmp_path / "rendered" / "base"
    assert result.midstream_dir == tmp_path / "rendered" / "midstream"
    assert result.overlays_dir == tmp_path / "rendered" / "overlays"

    assert read_yaml(result.base_dir / "kustomization.yaml")["resources"] == [
        "deployment.yaml",
        "service.yaml",
        "templated.yaml",
    ]
    assert (result.base_dir / "README.md").exists()
    assert not (result.base_dir / "config.yaml").exists()
    assert not (result.base_dir / "excluded.yaml").exists()

    assert read_yaml(result.midstream_dir / "kustomization.yaml") == {
        "apiVersion": "kustomize.config.k8s.io/v1beta1",
        "kind": "Kustomization",
        "bases": ["../base"],
        "resources": ["secret.yaml"],
        "patchesStrategicMerge": ["pullsecrets.yaml"],
        "images": [
            {"name": "nginx", "newName": "registry.example.com/myapp/nginx"},
            {
                "name": "quay.io/org/helper",
                "newName": "registry.example.com/myapp/helper",
            },
        ],
    }
    secret = read_yaml(result.midstream_dir / "secret.yaml")
    assert secret["metadata"] == {
        "name": "kotsadm-replicated-registry",
        "namespace": "default",
    }
    patches = list(
        yaml.safe_load_all((result.midstream_dir / "pullsecrets.yaml").read_text())
    )
    assert [p["metadata"]["name"] for p in patches] == ["web"]


async def test_render_without_registry(tmp_path: Path) -> None:
    """Test rendering the application with no registry configured."""
    options = RenderOptions(render_dir=tmp_path / "rendered")
    result = await render(TESTDATA_DIR, options)

    assert read_yaml(result.midstream_dir / "kustomization.yaml") == {
        "apiVersion": "kustomize.config.k8s.io/v1beta1",
        "kind": "Kustomization",
        "bases": ["../base"],
    }
    assert not (result.midstream_dir / "secret.yaml").exists()
    assert not (result.midstream_dir / "pullsecrets.yaml").exists()


async def test_render_include_kots_kinds(tmp_path: Path) -> None:
    """Test kots kinds are written to the base directory but not applied."""
    options = RenderOptions(render_dir=tmp_path / "rendered", exclude_kots_kinds=False)
    result = await render(TESTDATA_DIR, options)
    assert (result.base_dir / "config.yaml").exists()
    assert "config.yaml" not in read_yaml(result.base_dir / "kustomization.yaml")["resources"]


async def test_rerender(tmp_path: Path) -> None:
    """Test a second render keeps hand edits to the midstream layer."""
    options = RenderOptions(render_dir=tmp_path / "rendered", registry=REGISTRY)
    result = await render(TESTDATA_DIR, options)

    with pytest.raises(AlreadyExistsError):
        await render(TESTDATA_DIR, options)

    ks_path = result.midstream_dir / "kustomization.yaml"
    ks = read_yaml(ks_path)
    ks["patchesStrategicMerge"].insert(0, "custom.yaml")
    ks["images"][0]["newTag"] = "1.25-patched"
    ks_path.write_text(yaml.dump(ks, sort_keys=False))

    options.overwrite = True
    result = await render(TESTDATA_DIR, options)

    assert result.kustomization.patches_strategic_merge == [
        "custom.yaml",
        "pullsecrets.yaml",
    ]
    assert result.kustomization.resources == ["secret.yaml"]
    assert result.kustomization.images is not None
    assert result.kustomization.images[0] == Image(
        name="nginx",
        new_name="registry.example.com/myapp/nginx",
        new_tag="1.25-patched",
    )
    assert len(result.kustomization.images) == 2


CRONJOB = """---
apiVersion: batch/v1
kind: CronJob
metadata:
  name: backup
spec:
  schedule: "0 * * * *"
  jobTemplate:
    spec:
      template:
        spec:
          containers:
          - name: backup
            image: private/app:1
"""

REDIS = """---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {name}
spec:
  template:
    spec:
      containers:
      - name: redis
        image: redis:{tag}
"""


async def test_render_cronjob(tmp_path: Path) -> None:
    """Test a cron job gets the pull secret for its rewritten image."""
    source_dir = tmp_path / "upstream"
    source_dir.mkdir()
    (source_dir / "cronjob.yaml").write_text(CRONJOB)

    result = await render(
        source_dir, RenderOptions(render_dir=tmp_path / "rendered", registry=REGISTRY)
    )

    assert result.kustomization.images == [
        Image(name="private/app", new_name="registry.example.com/myapp/app")
    ]
    assert result.kustomization.patches_strategic_merge == ["pullsecrets.yaml"]
    patches = list(
        yaml.safe_load_all((result.midstream_dir / "pullsecrets.yaml").read_text())
    )
    assert patches == [
        {
            "apiVersion": "batch/v1",
            "kind": "CronJob",
            "metadata": {"name": "backup"},
            "spec": {
                "jobTemplate": {
                    "spec": {
                        "template": {
                            "spec": {
                                "imagePullSecrets": [
                                    {"name": "kotsadm-replicated-registry"}
                                ]
                            }
                        }
                    }
                }
            },
        }
    ]


async def test_render_same_image_different_tags(tmp_path: Path) -> None:
    """Test workloads using different tags of one image keep their own tags."""
    source_dir = tmp_path / "upstream"
    source_dir.mkdir()
    (source_dir / "cache.yaml").write_text(REDIS.format(name="cache", tag="6"))
    (source_dir / "queue.yaml").write_text(REDIS.format(name="queue", tag="7"))

    result = await render(
        source_dir, RenderOptions(render_dir=tmp_path / "rendered", registry=REGISTRY)
    )

    assert result.kustomization.images == [
        Image(name="redis", new_name="registry.example.com/myapp/redis")
    ]
    assert (result.base_dir / "cache.yaml").read_text().endswith("image: redis:6\n")
    assert (result.base_dir / "queue.yaml").read_text().endswith("image: redis:7\n")
