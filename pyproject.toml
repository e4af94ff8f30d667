[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "shardcells"
version = "0.1.0"
description = "Cell storage for shard states: bag-of-cells import, marker-based garbage collection and BOC export over an embedded column-family store"
requires-python = ">=3.10"
dependencies = []
keywords = ["cells", "bag-of-cells", "boc", "shard-state", "garbage-collection", "key-value"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["shardcells"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
