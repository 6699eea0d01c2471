[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshplane"
version = "0.1.0"
description = "Service-mesh data plane library: directory sources, snapshot overlays, round-robin balancing, authorization and unary gRPC invoke forwarding."
requires-python = ">=3.11"
dependencies = [
    "httpx",
    "grpcio",
]
keywords = [
    "service-mesh",
    "sidecar",
    "grpc",
    "consul",
    "etcd",
    "service-discovery",
    "load-balancing",
    "asyncio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["meshplane"]

[tool.hatch.build.targets.sdist]
include = [
    "meshplane",
    "tests",
    "README.md",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
