import setuptools

VERSION = '0.1.0'

setup_params = dict(
    name='offline-requests',
    version=VERSION,
    author='Kenneth VanderLinde',
    author_email='kwvanderlinde@gmail.com',
    url='https://github.com/kwvanderlinde/offline-requests',
    keywords='requests cache offline queue background-sync',
    packages=setuptools.find_packages(exclude=['tests', 'tests.*']),
    package_data={'': ['LICENSE.txt']},
    package_dir={'offline': 'offline'},
    include_package_data=True,
    description='Offline resilience for the requests library: strategy-driven caching and durable replay of mutations',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    install_requires=['requests>=2.25'],
    extras_require={
        'dev': [
            'mockito>=1.2',
            'pytest>=7',
            'pytest-cov>=4',
            'ddt>=1.4',
        ]
    },
    entry_points={},
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Natural Language :: English',
        'Operating System :: OS Independent',

        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
    ],
)


if __name__ == '__main__':
    setuptools.setup(**setup_params)
