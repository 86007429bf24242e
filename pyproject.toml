[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fdwarden"
version = "0.1.0"
description = "Awaitable non-blocking I/O on sockets and pipes, driven by a poll based event loop"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "poll",
    "sockets",
    "pipes",
    "non-blocking",
    "coroutines",
    "event-loop",
    "tls",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
fdwarden-benchmark = "fdwarden.benchmark:main"

[tool.hatch.build.targets.wheel]
packages = ["fdwarden"]

[tool.hatch.build.targets.sdist]
include = ["fdwarden", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"
