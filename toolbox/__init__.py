"""
Toolbox

Command line tools built on the dataflow layer:
- config: Settings loading and validation
- runtime: Downloader and CSV converter
"""
