# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
Deltagrad build configuration.

Pure Python on top of NumPy; accelerator devices are emulated on the
host, so there are no native extensions to compile.

Build
-----
    pip install -e .                          # editable install
    pip install -e .[dev]                     # with the test tooling
    python setup.py bdist_wheel               # wheel

Runtime environment variables are documented in ``deltagrad/config.py``.
"""
import os

from setuptools import setup, find_packages

# ── Package metadata ──
_readme = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'README.md')
try:
    with open(_readme, 'r', encoding='utf-8') as fh:
        long_description = fh.read()
except FileNotFoundError:
    long_description = ''

setup(
    name='deltagrad',
    version='0.1.0',
    author='Pictofeed, LLC',
    author_email='engineering@pictofeed.io',
    description=(
        'A neural network training engine — DAG networks, delta-buffer '
        'gradients and line-search optimizers on NumPy'
    ),
    long_description=long_description,
    long_description_content_type='text/markdown',
    license='Proprietary',

    packages=find_packages(include=['deltagrad', 'deltagrad.*']),

    python_requires='>=3.10',
    install_requires=[
        'numpy>=1.24',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0',
        ],
    },

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'License :: Other/Proprietary License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Artificial Intelligence',
    ],
    zip_safe=False,
)
