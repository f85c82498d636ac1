#!/usr/bin/env python

from setuptools import setup, find_packages

about = {}
with open('pacsnet/__version__.py') as f:
    exec(f.read(), about)


setup(name="pacsnet",
      packages=find_packages(exclude=['tests', 'tests.*']),
      include_package_data=True,
      version=about['__version__'],
      zip_safe=False,
      description="DICOM PACS client: verification, study query and report storage",
      author="Pavel 'Blane' Tuchin",
      author_email="blane.public@gmail.com",
      license="license.txt",
      keywords="dicom pacs python medicalimaging",
      classifiers=["License :: OSI Approved :: MIT License",
                   "Intended Audience :: Developers",
                   "Intended Audience :: Healthcare Industry",
                   "Development Status :: 4 - Beta",
                   "Programming Language :: Python",
                   "Programming Language :: Python :: 3",
                   "Operating System :: OS Independent",
                   "Topic :: Scientific/Engineering :: Medical Science Apps.",
                   "Topic :: Software Development :: Libraries"],
      long_description=open('README.rst').read(),
      python_requires=">=3.8",
      install_requires=["pydicom >= 2.2", "pydantic >= 2.0"],
      extras_require={'test': ['pytest']},
      entry_points={'console_scripts': ['pacsnet = pacsnet.__main__:main']})
