"""pbi-capture: record the query traffic of embedded Power BI reports.

The package logs into the analytics portal with Playwright, finds the
embedded report surfaces, buffers their query requests and writes them to
a JSON artifact.
"""

__version__ = "0.1.0"
