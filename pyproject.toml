[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chestyfs"
version = "0.1.0"
description = "A small distributed file store: a master node splits files into chunks and spreads them over data nodes."
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["distributed", "file storage", "chunks", "master", "data node", "tcp"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
chestyfs = "chestyfs.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["chestyfs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
