[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nvmelib"
version = "1.1.0"
description = "NVMe Management Interface messaging and NVMe controller, namespace and path objects"
requires-python = ">=3.10"
dependencies = []
keywords = ["nvme", "nvme-mi", "mctp", "storage", "management"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["nvmelib"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"
