[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "contest"
version = "0.1.0"
description = "Plugin registry, target channels, status rebuilding and job running for test orchestration"
requires-python = ">=3.11"
dependencies = []
keywords = ["testing", "orchestration", "jobs", "targets", "plugins"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["contest"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
