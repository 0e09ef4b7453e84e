# payments/delivery_zones.py
# ============================================================================
# TOWN TREASURE GROCERIES — DELIVERY ZONES
# ============================================================================
# Static list of Nairobi delivery locations grouped into zones with flat fees.
# The first location found inside the free-text address decides the zone.
# ============================================================================

from typing import Dict, List, Optional

ZONES: Dict[str, List[str]] = {
    "Zone 1": [
        "Parklands", "ABC Place", "Aga Khan University Hospital", "Arboretum",
        "Brookside Drive", "CBD", "Central Business District", "Chiromo",
        "City Hall Way", "City Market", "Gigiri", "Globe Roundabout",
        "Haile Selassie Avenue", "Highridge", "Kangemi", "KICC",
        "Kenyatta Avenue", "Kimathi Street", "Kitisuru", "Loresho",
        "Moi Avenue", "Muthaiga", "Ngara", "Pangani", "Riverside",
        "Sarit Centre", "Spring Valley", "Tom Mboya Street", "Upper Hill",
        "Waiyaki Way", "Westgate Mall", "Westlands",
    ],
    "Zone 2": [
        "Adams Arcade", "Argwings Kodhek Road", "Eastleigh", "Gikomba Market",
        "Harambee Estate", "Hurlingham", "Jericho", "Junction Mall",
        "Kaloleni", "Kileleshwa", "Kilimani", "Lavington", "Madaraka",
        "Makadara", "Nairobi West", "Prestige Plaza", "South B", "South C",
        "Strathmore University", "T-Mall", "Woodley", "Yaya Centre",
    ],
    "Zone 3": [
        "Allsops", "Baba Dogo", "Buruburu Phase", "Dandora", "Donholm",
        "Eastern Bypass", "Embakasi", "Fedha Estate", "Garden City Mall",
        "Githurai 44", "Githurai 45", "Imara Daima", "Jogoo Road", "Kahawa",
        "Kariobangi", "Kasarani", "Kayole", "Kenyatta University", "Komarock",
        "Lang'ata Road", "Mombasa Road", "Mwiki", "Ngong Road", "Njiru",
        "Pipeline", "Roysambu", "Ruaraka", "Tassia", "Thika Superhighway",
        "Thome", "TRM Mall", "Umoja", "Zimmerman",
    ],
    "Zone 4": [
        "Bomas of Kenya", "Dagoretti", "Galleria Mall", "Karen", "Kawangware",
        "Kikuyu", "Kinoo", "Lang'ata", "Mountain View", "Ongata Rongai",
        "Rongai", "Ruiru", "Juja", "Uthiru", "Waithaka", "Wilson Airport",
    ],
    "Zone 5": [
        "Athi River", "Gateway Mall", "JKIA", "Joska", "Kamulu", "Kitengela",
        "Mlolongo", "Ruai", "SGR Nairobi Terminus", "Syokimau", "Utawala",
    ],
    "Zone 6": [
        "Banana Hill", "Gachie", "Kiambu", "Limuru", "Machakos", "Ndenderu",
        "Ngong", "Ruaka", "Tatu City", "Thika", "Tigoni", "Two Rivers Mall",
        "Village Market",
    ],
    "Zone 7": [
        "Test",
    ],
    "Slums": [
        "Huruma", "Kibera", "Korogocho", "Mathare", "Mukuru", "Majengo",
        "Soweto East", "Soweto West", "Viwandani",
    ],
}

ZONE_FEES: Dict[str, int] = {
    "Zone 1": 150,
    "Zone 2": 250,
    "Zone 3": 350,
    "Zone 4": 450,
    "Zone 5": 600,
    "Zone 6": 800,
    "Zone 7": 0,
    "Slums": 200,
}

DEFAULT_FEE = 0


def find_zone(address: Optional[str]) -> Optional[str]:
    """Return the zone whose location appears in the address, if any."""
    if not address or not address.strip():
        return None
    lowered = address.lower()
    for zone, locations in ZONES.items():
        for location in locations:
            if location.lower() in lowered:
                return zone
    return None


def get_delivery_fee(address: Optional[str]) -> int:
    zone = find_zone(address)
    if zone is None:
        return DEFAULT_FEE
    return ZONE_FEES[zone]
