[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kaddht"
version = "0.1.0"
description = "Kademlia distributed hash table building blocks: wire messages, lookup state, provider records and routing-table refresh"
requires-python = ">=3.10"
dependencies = []
keywords = ["kademlia", "dht", "p2p", "routing", "distributed-hash-table"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["kaddht"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
