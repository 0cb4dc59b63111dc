from setuptools import find_packages, setup

setup(
    name="pathwatch",
    version="0.1.0",
    description="A declarative file/directory change watcher with daemon support",
    author="Araray Velho",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click",
        "toml",
        "pyyaml",
        "python-daemon",
        "rich",
        "tabulate",
        "psutil",
        "inotify_simple",
    ],
    extras_require={
        "test": [
            "pytest",
        ]
    },
    entry_points={
        "console_scripts": [
            "pathwatch=pathwatch.cli:main"
        ]
    },
)
