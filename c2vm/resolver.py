"""Image resolution: references to an ordered layer manifest plus image config."""

from __future__ import annotations

import abc
import json
import re
import subprocess
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Tuple

from c2vm.constants import OCI_INDEX_MEDIA_TYPES, OCI_PLATFORM
from c2vm.exceptions import ResolutionError
from c2vm.models import ImageConfig, ImageManifest, LayerDescriptor
from c2vm.utils import describe_failure, ensure_directory, log, run

_DIGEST_RE = re.compile(r"^(?P<alg>[a-z0-9]+):(?P<hex>[a-f0-9]{32,128})$")
_REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"
_LAYOUT_TAG = "latest"


class ContentResolver(abc.ABC):
    """Source of image manifests, configs and layer blobs."""

    @abc.abstractmethod
    def pull(self, reference: str) -> Tuple[ImageManifest, ImageConfig]:
        ...

    @abc.abstractmethod
    def read_layer(self, digest: str) -> BinaryIO:
        ...


def parse_oci_reference(reference: str) -> Tuple[Path, Optional[str]]:
    """Split ``oci:<dir>[:<tag>]`` into the layout directory and optional tag."""
    location = reference[len("oci:"):]
    path, sep, tag = location.rpartition(":")
    if sep and tag and "/" not in tag:
        return Path(path), tag
    return Path(location), None


class OciLayoutResolver(ContentResolver):
    """Reads an OCI image layout directory (index.json plus blobs/)."""

    def __init__(self, layout_dir: Path, tag: Optional[str] = None) -> None:
        self.layout_dir = Path(layout_dir)
        self.tag = tag

    def _blob_path(self, digest: str) -> Path:
        match = _DIGEST_RE.match(digest)
        if not match:
            raise ResolutionError(f"Malformed digest '{digest}'")
        return self.layout_dir / "blobs" / match["alg"] / match["hex"]

    def _read_json(self, path: Path) -> Dict[str, Any]:
        try:
            return json.loads(path.read_text())
        except OSError as exc:
            raise ResolutionError(f"Cannot read {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ResolutionError(f"{path} is not valid JSON: {exc}") from exc

    def _select(self, index: Dict[str, Any], use_tag: bool) -> Dict[str, Any]:
        manifests = index.get("manifests") or []
        if use_tag and self.tag:
            manifests = [m for m in manifests if (m.get("annotations") or {}).get(_REF_NAME_ANNOTATION) == self.tag]
            if not manifests:
                raise ResolutionError(f"Tag '{self.tag}' not found in {self.layout_dir}")
        if len(manifests) > 1:
            manifests = [m for m in manifests if self._platform_matches(m.get("platform"))]
        if not manifests:
            raise ResolutionError(f"No linux/amd64 manifest in {self.layout_dir}")
        return manifests[0]

    @staticmethod
    def _platform_matches(platform: Optional[Dict[str, Any]]) -> bool:
        if not platform:
            return False
        return all(platform.get(key) == value for key, value in OCI_PLATFORM.items())

    def pull(self, reference: str = "") -> Tuple[ImageManifest, ImageConfig]:
        index = self._read_json(self.layout_dir / "index.json")
        descriptor = self._select(index, use_tag=True)
        # Multi-platform images nest another index under the tagged entry.
        while descriptor.get("mediaType") in OCI_INDEX_MEDIA_TYPES:
            descriptor = self._select(self._read_json(self._blob_path(descriptor["digest"])), use_tag=False)

        manifest = self._read_json(self._blob_path(descriptor["digest"]))
        try:
            layers = tuple(
                LayerDescriptor(digest=layer["digest"], media_type=layer.get("mediaType", ""), size_bytes=int(layer.get("size", 0)))
                for layer in manifest.get("layers") or []
            )
            config_digest = manifest["config"]["digest"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ResolutionError(f"Malformed manifest {descriptor.get('digest')}: {exc}") from exc

        blob = self._read_json(self._blob_path(config_digest))
        image_config = blob.get("config") or {}
        config = ImageConfig(
            cmd=tuple(image_config.get("Cmd") or ()),
            env=tuple(image_config.get("Env") or ()),
            working_dir=image_config.get("WorkingDir") or "",
            entrypoint=tuple(image_config.get("Entrypoint") or ()),
        )
        log("INFO", f"Resolved {reference or self.layout_dir}: {len(layers)} layer(s)")
        return ImageManifest(layers=layers), config

    def read_layer(self, digest: str) -> BinaryIO:
        path = self._blob_path(digest)
        try:
            return open(path, "rb")
        except OSError as exc:
            raise ResolutionError(f"Layer {digest} not available: {exc}") from exc


class SkopeoResolver(ContentResolver):
    """Fetches registry images into a cached OCI layout with skopeo."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = Path(cache_dir)
        self._layout: Optional[OciLayoutResolver] = None

    def _layout_dir(self, reference: str) -> Path:
        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", reference) or "image"
        return self.cache_dir / safe_name

    def pull(self, reference: str) -> Tuple[ImageManifest, ImageConfig]:
        layout_dir = self._layout_dir(reference)
        source = reference if reference.startswith("docker://") else f"docker://{reference}"
        cmd = [
            "skopeo",
            "copy",
            "--override-os",
            OCI_PLATFORM["os"],
            "--override-arch",
            OCI_PLATFORM["architecture"],
            source,
            f"oci:{layout_dir}:{_LAYOUT_TAG}",
        ]
        log("INFO", f"Pulling {reference}")
        try:
            ensure_directory(self.cache_dir)
            run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise ResolutionError("skopeo is not installed") from exc
        except subprocess.CalledProcessError as exc:
            raise ResolutionError(f"Failed to pull {reference}: {describe_failure(exc)}") from exc
        except OSError as exc:
            raise ResolutionError(f"Failed to pull {reference}: {exc}") from exc
        self._layout = OciLayoutResolver(layout_dir, tag=_LAYOUT_TAG)
        return self._layout.pull(reference)

    def read_layer(self, digest: str) -> BinaryIO:
        if self._layout is None:
            raise ResolutionError("read_layer called before pull")
        return self._layout.read_layer(digest)


def resolver_for(reference: str, cache_dir: Path) -> ContentResolver:
    if reference.startswith("oci:"):
        layout_dir, tag = parse_oci_reference(reference)
        return OciLayoutResolver(layout_dir, tag)
    return SkopeoResolver(cache_dir)
