[build-system]
requires = ["setuptools>=61"]
build-backend = "setuptools.build_meta"

[project]
name = "tunoffload"
version = "0.1.0"
description = "virtio-net GSO splitting and GRO coalescing of IP packets for TUN devices"
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "network", "tunnel", "gro", "gso", "virtio", "checksum"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
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

[tool.setuptools]
packages = ["tunoffload"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
