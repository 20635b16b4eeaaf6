[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cmddaemon"
version = "0.5.6"
description = "A process supervisor that keeps configured commands running, restarts them with back-off and serves an HTTP control API with Prometheus metrics and service discovery."
requires-python = ">=3.10"
keywords = [
    "daemon",
    "supervisor",
    "process-manager",
    "prometheus",
    "service-discovery",
    "consul",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Framework :: Flask",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "pyyaml>=6.0",
    "flask>=2.2",
    "requests>=2.28",
    "psutil>=5.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "responses>=0.23",
]

[project.scripts]
cmddaemon = "cmddaemon.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["cmddaemon"]

[tool.hatch.build.targets.sdist]
include = ["cmddaemon", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
