from .inventory import Discovery, InventoryFileDiscovery, StaticDiscovery
