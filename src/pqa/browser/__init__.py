"""Page-side automation (Playwright).

``locators`` finds the input, submit control and response container;
``completion`` decides when a streamed reply has finished; ``page_agent``
runs one prompt end-to-end through a ``PageDriver``; ``playwright_driver``
and ``session`` bind all of it to a live browser page.
"""
