"""Configuration objects for kots-local."""

from dataclasses import dataclass, field
from pathlib import Path

BASE_DIRNAME = "base"
MIDSTREAM_DIRNAME = "midstream"


@dataclass
class RegistryOptions:
    """Configuration for the private registry images are rewritten to."""

    endpoint: str | None = None
    """Hostname (and optional port) of the registry."""

    namespace: str | None = None
    """Path prefix under the registry endpoint, e.g. an organization."""

    username: str | None = None
    """Username used to build the image pull secret."""

    password: str | None = None
    """Password used to build the image pull secret."""

    @property
    def is_configured(self) -> bool:
        """Return true if images should be rewritten to this registry."""
        return bool(self.endpoint)

    @property
    def requires_auth(self) -> bool:
        """Return true if pods need a pull secret for this registry."""
        return self.is_configured and bool(self.username) and bool(self.password)


@dataclass
class RenderOptions:
    """Configuration for a render pass."""

    render_dir: Path
    """Directory that receives the base and midstream layers."""

    overwrite: bool = False
    """Replace an existing base layer instead of failing."""

    exclude_kots_kinds: bool = True
    """Leave kots custom resources out of the base filesystem."""

    registry: RegistryOptions = field(default_factory=RegistryOptions)
    """Private registry settings."""

    namespace: str | None = None
    """Namespace for the generated pull secret."""

    @property
    def base_dir(self) -> Path:
        """Return the directory of the base layer."""
        return self.render_dir / BASE_DIRNAME

    @property
    def midstream_dir(self) -> Path:
        """Return the directory of the midstream layer."""
        return self.render_dir / MIDSTREAM_DIRNAME
