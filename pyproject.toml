[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "osdn"
version = "0.1.0"
description = "Building blocks for a VXLAN overlay network: VNID and subnet allocation, egress IP marks and node monitoring, a CNI request server, iptables rule management and node metrics"
requires-python = ">=3.10"
dependencies = []
keywords = ["sdn", "networking", "vxlan", "vnid", "cni", "iptables", "egress", "subnet"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
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
packages = ["osdn"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
