"""
command_store
=============

Durable records of the bridge, kept in Redis:

• Command     – one unit of dispatchable work (pending → processing → done)
• Connection  – one polling execution client + its accounting
• Route       – room id → connection, with allowed signal types / lot cap
• DeliveryLog – append-only audit row per ingestion request

Modules
-------
models.py  – dataclasses + hash/JSON (de)serialisation
store.py   – CommandStore, incl. the conditional `transition()` primitive
"""
