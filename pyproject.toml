[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gpstrack"
version = "0.1.0"
description = "GPS tracker gateway: GT06 and simple-JSON device protocols, live subscriber fan-out and a websocket stream"
requires-python = ">=3.10"
keywords = ["gps", "tracker", "gt06", "gk310", "telematics", "websocket", "crc16", "asyncio"]
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
    "Framework :: AsyncIO",
    "Topic :: Internet",
    "Topic :: Communications",
]
dependencies = [
    "bcrypt",
    "websockets",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["gpstrack"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
