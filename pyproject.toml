[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fdtkit"
version = "0.1.0"
description = "Device tree building blocks: live trees, source positions, and source and YAML output"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["device tree", "fdt", "dts", "yaml", "embedded"]
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
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["fdtkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
