import setuptools

VERSION = '1.0.0'

setup_params = dict(
    name='apexclient',
    version=VERSION,
    author='ApprenticeApex',
    url='https://github.com/apprenticeapex/apexclient',
    keywords='requests cache offline retry',
    packages=setuptools.find_namespace_packages(include=['apexclient', 'apexclient.*']),
    include_package_data=True,
    description='Request layer for the ApprenticeApex API: retrying client and offline cache worker',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    install_requires=['requests~=2.31', 'urllib3~=2.2'],
    extras_require={
        'dev': [
            'mockito~=1.4',
            'pytest~=8.0',
            'pytest-cov~=5.0',
            'ddt~=1.6',
        ]
    },
    entry_points={},
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'Natural Language :: English',
        'Operating System :: OS Independent',

        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
    ],
)


if __name__ == '__main__':
    setuptools.setup(**setup_params)
