[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "prrelay"
version = "0.1.0"
description = "Streaming NDJSON output, atomic fetch state and fetch metadata tracking for pull request exports"
requires-python = ">=3.10"
dependencies = []
keywords = ["pull-requests", "ndjson", "state", "metadata", "incremental-fetch"]
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
    "Topic :: Software Development :: Version Control :: Git",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["prrelay"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
