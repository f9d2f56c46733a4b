[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "amplink"
version = "0.1.0"
description = "Remote processor life cycle, ELF firmware loading, resource tables and RPMsg endpoints"
requires-python = ">=3.10"
dependencies = []
keywords = ["remoteproc", "rpmsg", "amp", "elf", "firmware", "embedded", "resource-table"]
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
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["amplink"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
