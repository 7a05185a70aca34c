# Declaration lifecycle services
from customs.services.declaration.lifecycle import DeclarationService
from customs.services.declaration.transitions import TRANSITIONS, Driver, get_transition
from customs.services.declaration.xml_builder import build_declaration_xml, generate_filename, hash_xml

__all__ = [
    "DeclarationService",
    "TRANSITIONS",
    "Driver",
    "get_transition",
    "build_declaration_xml",
    "generate_filename",
    "hash_xml",
]
