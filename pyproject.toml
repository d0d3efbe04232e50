[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wxlog"
version = "0.1.0"
description = "Locate running chat client accounts, recover database keys from process memory, decrypt local message databases and look up their contents."
requires-python = ">=3.10"
keywords = ["chat", "sqlite", "decryption", "messages", "contacts", "keys"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: MacOS",
    "Operating System :: Microsoft :: Windows",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
    "Topic :: Database",
    "Topic :: Security :: Cryptography",
]
dependencies = [
    "cryptography",
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["wxlog"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
