from os.path import normpath
from setuptools import setup, find_packages


main_ns = {}
ver_path = normpath("src/cfgdiff/version.py")
with open(ver_path) as ver_file:
    exec(ver_file.read(), main_ns)

setup(
    name="cfgdiff",
    version=main_ns["__version__"],
    description="Structural diff of the control-flow graphs of compiled functions",
    license="Apache-2.0",
    python_requires=">=3.10",
    packages=find_packages(
        where="src",
        include=["cfgdiff*"],
    ),
    package_dir={"": "src"},
    install_requires=[
        "numpy",
        "networkx",
        "capstone>=5.0,<6",
        "lief>=0.15",
        "llvmlite",
        "itanium-demangler",
        "rich",
        "rich-click",
        "enum-tools",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["cfgdiff=cfgdiff.__main__:main"],
    },
)
