"""Stream resolution and download: playlists, remuxing, segment lists."""
