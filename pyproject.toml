[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "unwindkit"
version = "0.14.0"
description = "x86_64 stack frame unwinding rules, rule caching, instruction analysis and frame iteration"
requires-python = ">=3.10"
dependencies = []
keywords = ["unwind", "stackwalk", "profiling", "debug", "x86_64"]
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
    "Topic :: Software Development :: Debuggers",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["unwindkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
strict = true
