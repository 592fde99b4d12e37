[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "trdlserver"
version = "0.1.0"
description = "Task manager, request backend, non-atomic TUF store and release publisher for a trusted delivery server"
requires-python = ">=3.10"
dependencies = []
keywords = ["tuf", "release", "publisher", "tasks", "delivery", "update-framework"]
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
    "Topic :: Software Development :: Build Tools",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["trdlserver"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
