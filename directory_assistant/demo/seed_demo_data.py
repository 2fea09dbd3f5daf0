# directory_assistant/demo/seed_demo_data.py

from datetime import datetime, timedelta, timezone

from directory_assistant.storage.db import DEFAULT_DB_PATH, get_connection
from directory_assistant.storage.repository import initialize_schema

CATEGORIES = [
    ("cat-foto", "Fotografía y Video", "fotografia-video", 1),
    ("cat-musica", "Música y DJ", "musica-dj", 2),
    ("cat-banquetes", "Banquetes", "banquetes", 3),
    ("cat-snacks", "Snacks y Elotes", "snacks", 4),
]

PROVIDERS = [
    ("p-charlie", "Charlie Production", "San Luis Potosí", 1, 1, 1, "Video y foto para bodas", "4440000001"),
    ("p-luz", "Foto Luz", "Guadalajara", 0, 0, 1, "Fotografía de eventos", "3330000002"),
    ("p-ritmo", "DJ Ritmo", "Monterrey", 1, 0, 0, "DJ y sonido", "8180000003"),
    ("p-sabor", "Banquetes Sabor", "Guadalajara", 0, 1, 1, "Banquetes para 50 a 500 personas", "3330000004"),
    ("p-snacks", "Snacks Charlitron", "San Luis Potosí", 0, 0, 1, "Barra y carrito de elotes", "4440000005"),
]

SERVICES = [
    ("p-charlie", "cat-foto", "Video de boda", 8000, 15000, None),
    ("p-luz", "cat-foto", "Sesión fotográfica de evento", 2500, 9000, None),
    ("p-ritmo", "cat-musica", "DJ 5 horas", 3500, 8000, None),
    ("p-sabor", "cat-banquetes", "Banquete 3 tiempos", None, None, "$250 - $450 MXN por persona"),
    ("p-snacks", "cat-snacks", "Barra de elotes 100 personas", 3000, None, None),
]

REVIEWS = [
    ("p-charlie", 5), ("p-charlie", 5), ("p-charlie", 4),
    ("p-luz", 5), ("p-luz", 4),
    ("p-ritmo", 5),
    ("p-snacks", 5), ("p-snacks", 5),
]

PROFILE_VIEWS = {"p-charlie": 12, "p-snacks": 7, "p-luz": 4, "p-ritmo": 2}


def seed_demo_data(db_path: str = DEFAULT_DB_PATH) -> None:
    """Fill the marketplace tables with a small demo directory."""
    initialize_schema(db_path)
    now = datetime.now(timezone.utc)
    conn = get_connection(db_path)
    try:
        conn.executemany(
            "INSERT OR REPLACE INTO categories (id, name, slug, display_order) VALUES (?, ?, ?, ?)",
            CATEGORIES
        )
        conn.executemany("""
            INSERT OR REPLACE INTO providers
            (id, name, city, is_premium, featured, is_verified, description, whatsapp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, PROVIDERS)
        conn.execute("DELETE FROM provider_services")
        conn.executemany("""
            INSERT INTO provider_services
            (provider_id, category_id, service_name, price_min, price_max, price_range)
            VALUES (?, ?, ?, ?, ?, ?)
        """, SERVICES)
        conn.execute("DELETE FROM provider_reviews")
        conn.executemany(
            "INSERT INTO provider_reviews (provider_id, rating, created_at) VALUES (?, ?, ?)",
            [(pid, rating, (now - timedelta(days=i)).isoformat()) for i, (pid, rating) in enumerate(REVIEWS)]
        )
        conn.execute("DELETE FROM provider_analytics")
        conn.executemany(
            "INSERT INTO provider_analytics (provider_id, event_type, created_at) VALUES (?, ?, ?)",
            [
                (pid, "profile_view", (now - timedelta(hours=i)).isoformat())
                for pid, views in PROFILE_VIEWS.items()
                for i in range(views)
            ]
        )
        conn.commit()
    finally:
        conn.close()


if __name__ == "__main__":
    seed_demo_data()
    print("Demo directory data inserted")
