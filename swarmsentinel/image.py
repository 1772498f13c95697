"""Image reference helpers."""

_DIGEST_MARKER = "@sha256:"


def normalize_image(image: str) -> str:
    """Strip an ``@sha256:...`` digest suffix from an image reference."""
    head, marker, _ = image.partition(_DIGEST_MARKER)
    return head if marker else image