"""
tests/
------
FHT Message Service — Test Package
----------------------------------
Test Modules:
    - test_schemas.py: record parsing, coding systems, batch summaries
    - test_settings.py: appsettings.json, env overrides, clientconfig.txt, decryption
    - test_config_resolver.py: config precedence and UDP discovery
    - test_hl7_builder.py: HL7 segments, escaping, doctor names, timestamps
    - test_delivery.py: filenames, encodings, atomic writes
    - test_emr_directory.py: BestPractice / MedicalDirector directory lookups
    - test_api_client.py: remote and local API calls
    - test_orchestrator.py: batch procedure and poll loop
    - test_stream.py: WebSocket front end
    - test_console_input.py: console record entry
    - test_main.py: health endpoint and command line

Project: FHT Message Service
"""
