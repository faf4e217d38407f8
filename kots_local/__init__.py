"""
kots-local renders kots application manifests into a layered kustomize
directory: a `base` layer with the manifests themselves and a `midstream`
layer with registry image rewrites and pull secrets.
"""

__all__ = [
    "base",
    "midstream",
    "manifest",
    "renderer",
    "template",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
