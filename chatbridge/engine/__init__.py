# Channel-driven chat engine
#
# This package turns OpenAI-style chat requests into linear generation
# requests and turns the engine's token events back into responses.
#
# Key components:
#   - chat_types.py   Chat request / response shapes
#   - types.py        Generation request and token event types
#   - chat_engine.py  Normalization, dispatch, aggregation and streaming
#   - channel.py      Token channel + shared incoming-request channel
#   - worker.py       Background generation worker
#   - adapters/       Model-family specific adapters
#   - registry.py     Maps model families to adapters
