import pytest

from nyduskit.registry import (
    Image,
    Reference,
    convert_to_vpc_host,
    parse_docker_ref,
    parse_image,
)


@pytest.mark.parametrize(
    "host, want",
    [
        (
            "acr-nydus-registry.cn-hangzhou.cr.aliyuncs.com",
            "acr-nydus-registry-vpc.cn-hangzhou.cr.aliyuncs.com",
        ),
        (
            "acr-nydus-registry-vpc.cn-hangzhou.cr.aliyuncs.com",
            "acr-nydus-registry-vpc.cn-hangzhou.cr.aliyuncs.com",
        ),
    ],
)
def test_convert_to_vpc_host(host, want):
    assert convert_to_vpc_host(host) == want


@pytest.mark.parametrize(
    "image_id, want",
    [
        (
            "localhost:5000/hello-world/foo/bar:latest",
            Image(host="localhost:5000", repo="hello-world/foo/bar"),
        ),
        ("localhost:5000/bar:latest", Image(host="localhost:5000", repo="bar")),
        (
            "nydus-registry.cn-hangzhou.cr.aliyuncs.com/poc/tomcat:latest-app-nydus-platform",
            Image(host="nydus-registry.cn-hangzhou.cr.aliyuncs.com", repo="poc/tomcat"),
        ),
    ],
)
def test_parse_image(image_id, want):
    assert parse_image(image_id) == want


def test_parse_image_invalid():
    with pytest.raises(ValueError):
        parse_image("nydus-registry.cn-hangzhou.cr.aliyuncs.com/:latest-app-nydus-platform")


def test_parse_docker_ref_normalizes_official_image():
    ref = parse_docker_ref("ubuntu")
    assert ref == Reference(domain="docker.io", path="library/ubuntu", tag="latest")
    assert ref.name() == "docker.io/library/ubuntu"
    assert str(ref) == "docker.io/library/ubuntu:latest"


def test_parse_docker_ref_legacy_domain():
    ref = parse_docker_ref("index.docker.io/busybox:1.0")
    assert ref.domain == "docker.io"
    assert ref.path == "library/busybox"
    assert ref.tag == "1.0"


def test_parse_docker_ref_digest_drops_tag():
    digest = "sha256:" + "a" * 64
    ref = parse_docker_ref(f"example.com/test/myserver:v1@{digest}")
    assert ref.tag is None
    assert ref.digest == digest
    assert ref.name() == "example.com/test/myserver"


def test_parse_docker_ref_rejects_uppercase_repo():
    with pytest.raises(ValueError, match="lowercase"):
        parse_docker_ref("example.com/Test/server")


def test_parse_docker_ref_rejects_hex_id():
    with pytest.raises(ValueError):
        parse_docker_ref("a" * 64)