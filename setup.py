#!/usr/bin/env python3
"""DBRT - Setup Configuration"""

from setuptools import setup, find_packages
import os

def get_version():
    return '0.3.0'

def get_long_description():
    readme_file = os.path.join(os.path.dirname(__file__), 'README.md')
    if os.path.exists(readme_file):
        with open(readme_file, 'r', encoding='utf-8') as f:
            return f.read()
    return ''

setup(
    name='dbrt',
    version=get_version(),
    description='Depth-based robot tracking: asynchronous fusion of joint encoders and depth images',
    long_description=get_long_description(),
    long_description_content_type='text/markdown',
    packages=find_packages(include=['dbrt', 'dbrt.*']),
    python_requires='>=3.8',
    install_requires=[
        'numpy>=1.21.0',
        'scipy>=1.7.0',
        'PyYAML>=5.4',
    ],
    extras_require={
        'dev': ['pytest>=7.0.0', 'pytest-cov>=4.0.0', 'black>=23.0.0', 'flake8>=6.0.0'],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering',
    ],
    keywords=['robotics', 'tracking', 'kalman-filter', 'particle-filter', 'depth-camera',
              'sensor-fusion'],
)
