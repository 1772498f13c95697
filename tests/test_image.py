import pytest

from swarmsentinel.image import normalize_image


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("nginx:1.23@sha256:abc123def456", "nginx:1.23"),
        (
            "registry.example.com/myapp/api:v2.1.0@sha256:0123456789abcdef",
            "registry.example.com/myapp/api:v2.1.0",
        ),
        ("nginx:1.23", "nginx:1.23"),
        ("busybox:latest", "busybox:latest"),
        ("nginx@sha256:abc123def456", "nginx"),
        ("nginx", "nginx"),
        ("", ""),
        (
            "myregistry.io/app:prod@sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855",
            "myregistry.io/app:prod",
        ),
    ],
)
def test_normalize_image(value, expected):
    assert normalize_image(value) == expected