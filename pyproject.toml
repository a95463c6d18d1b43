[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ecslave"
version = "3.0.0"
description = "EtherCAT slave stack: AL state machine, mailbox handling and CANopen over EtherCAT object dictionary with an SDO server"
requires-python = ">=3.10"
dependencies = []
keywords = ["ethercat", "fieldbus", "coe", "canopen", "sdo", "mailbox", "slave"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ecslave"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
