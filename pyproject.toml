[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "metricgateway"
version = "0.1.0"
description = "Protocol listeners, forwarders and metric-name deconstructors for a metrics gateway"
requires-python = ">=3.11"
dependencies = []
keywords = [
    "metrics",
    "carbon",
    "graphite",
    "collectd",
    "prometheus",
    "remote-write",
    "gateway",
    "monitoring",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["metricgateway"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
