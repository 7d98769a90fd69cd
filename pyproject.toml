[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rtrcache"
version = "0.1.0"
description = "An RPKI-to-Router (RTR) cache server that serves validated ROA payloads to routers"
requires-python = ">=3.10"
dependencies = []
keywords = ["rpki", "rtr", "roa", "vrp", "bgp", "routing", "networking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rtrcache = "rtrcache.server:main"

[tool.hatch.build.targets.wheel]
packages = ["rtrcache"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
