import io
import re

from setuptools import find_packages, setup

__version__ = re.search(
    r'__version__\s*=\s*[\'"]([^\'"]*)[\'"]',
    io.open("src/runproxy/version.py", encoding="utf_8_sig").read(),
).group(1)


setup(
    name="runproxy-python",
    version=__version__,
    description="runproxy is a Python library for driving execution sessions against remote worker processes.",
    long_description="""runproxy launches a worker process, negotiates its extensions, dispatches runs to it and relays the results back.""",
    author="",
    author_email="",
    package_dir={"": "src"},
    packages=find_packages("src"),
    zip_safe=False,
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "randomname",
        "pydantic>=2",
        "pyzmq",
        "orjson",
        "fire",
        "typing_extensions",
    ],
    extras_require={
        "tests": ["pytest"],
    },
)
