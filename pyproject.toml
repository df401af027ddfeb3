[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "syslabs"
version = "0.1.0"
description = "Operating-system exercises: a FAT32 image tool, a command server over named pipes and a shared message framework"
requires-python = ">=3.10"
dependencies = [
    "filelock",
]
keywords = [
    "fat32",
    "filesystem",
    "named-pipes",
    "message-queue",
    "ipc",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System",
    "Topic :: System :: Filesystems",
    "Topic :: Education",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
fatmod = "syslabs.fatmod_cli:main"
comserver = "syslabs.comserver:main"
comclient = "syslabs.client:main"
mfserver = "syslabs.mfserver:main"
mfdemo = "syslabs.mfdemo:main"

[tool.hatch.build.targets.wheel]
packages = ["syslabs"]

[tool.pytest.ini_options]
addopts = "-ra"
