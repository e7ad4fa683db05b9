[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "subclient"
version = "0.1.0"
description = "Asyncio client for querying a Substrate node and following transactions over WebSocket JSON-RPC"
requires-python = ">=3.10"
keywords = ["substrate", "rpc", "json-rpc", "websocket", "scale", "extrinsic", "storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "websockets",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
subclient-metadata = "subclient.node:main"

[tool.hatch.build.targets.wheel]
packages = ["subclient"]

[tool.hatch.build.targets.sdist]
include = ["subclient", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
