[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunpkt"
version = "0.1.0"
description = "TUN device packet handling: internet checksums, virtio-net GSO splitting and TCP/UDP GRO coalescing"
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "virtio", "gso", "gro", "checksum", "networking", "packets"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tunpkt"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
