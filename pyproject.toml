[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wdmux"
version = "1.0.1"
description = "Watchdog multiplexing daemon and client library: many processes share one hardware watchdog device"
requires-python = ">=3.10"
dependencies = []
keywords = ["watchdog", "wdmd", "daemon", "fencing", "high-availability", "unix-socket"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
wdmux = "wdmux.cli:main"
wdmux-client = "wdmux.democlient:main"

[tool.hatch.build.targets.wheel]
packages = ["wdmux"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
