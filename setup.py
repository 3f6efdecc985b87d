"""Setup script for betterport."""

from setuptools import setup, find_packages


requires = [
    "attrs>=19.1.0",
    "blinker>=1.4",
    "pyserial>=3.4",
    "trio>=0.16.0",
    "trio-util>=0.1.0",
]

__version__ = None
exec(open("src/betterport/version.py").read())

setup(
    name="betterport",
    version=__version__,
    packages=find_packages("src"),
    package_dir={"": "src"},
    include_package_data=True,
    python_requires=">=3.7",
    install_requires=requires,
    extras_require={"test": ["pytest>=5.0", "pytest-trio>=0.6.0"]},
    setup_requires=[],
)
