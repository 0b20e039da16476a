from setuptools import find_packages, setup
import bip379
import io


with io.open("README.md", encoding="utf-8") as f:
    long_description = f.read()

with io.open("requirements.txt", encoding="utf-8") as f:
    requirements = [r for r in f.read().split('\n') if len(r)]

with io.open("tests/requirements.txt", encoding="utf-8") as f:
    tests_requirements = [r for r in f.read().split('\n') if len(r)]

setup(name="bip379",
      version=bip379.__version__,
      description="Miniscript and spending policies: parsing, Script encoding and decoding, "
                  "satisfaction and policy compilation",
      long_description=long_description,
      long_description_content_type="text/markdown",
      url="http://github.com/darosior/python-bip379",
      author="Antoine Poinsot",
      author_email="darosior@protonmail.com",
      license="MIT",
      packages=find_packages(exclude=["tests", "tests.*"]),
      keywords=["bitcoin", "miniscript", "script", "policy", "compiler"],
      install_requires=requirements,
      extras_require={"tests": tests_requirements})
