import setuptools

with open("subfs/.version") as f:
    version = f.read().strip()

setuptools.setup(
    name="subfs",
    version=version,
    python_requires=">=3.11.0",
    author="subfs contributors",
    license="Apache-2.0",
    entry_points={"console_scripts": ["subfs = subfs.__main__:main"]},
    packages=["subfs"],
    package_data={"subfs": [".version"]},
    install_requires=[
        "appdirs",
        "cachetools",
        "click",
        "jinja2",
        "llfuse",
        "requests",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
)
