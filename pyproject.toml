[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dtmlite"
version = "0.1.0"
description = "Core of a distributed transaction manager: saga, msg, tcc, xa and workflow processing over HTTP."
requires-python = ">=3.10"
keywords = ["distributed-transactions", "saga", "tcc", "xa", "two-phase-message", "workflow"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: Flask",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "flask",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
dtmlite = "dtmlite.admin:main"

[tool.hatch.build.targets.wheel]
packages = ["dtmlite"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
