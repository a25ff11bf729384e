"""
Scaffold templates - Build and config files synthesized for generated projects.

Everything here is plain text; the materializer decides which files are
missing and writes them, the sanitizer uses the fallbacks when generated
content is unusable.
"""

import json
from typing import Dict

from preview_sandbox.schemas import Framework
from preview_sandbox.utils import pascal_case


# =============================================================================
# CONSTANTS
# =============================================================================

# Port the dev server listens on inside every container
INTERNAL_PORT = 3000

NODE_IMAGE = "node:20-alpine"

# Dev scripts pinned for container use (bind all interfaces, fixed port)
DEV_SCRIPTS = {
    Framework.NEXTJS: f"next dev --hostname 0.0.0.0 --port {INTERNAL_PORT}",
    Framework.REACT: f"vite --host 0.0.0.0 --port {INTERNAL_PORT} --strictPort",
    Framework.VUE: f"vite --host 0.0.0.0 --port {INTERNAL_PORT} --strictPort",
    Framework.VANILLA: f"vite --host 0.0.0.0 --port {INTERNAL_PORT} --strictPort",
}

PACKAGE_TEMPLATES = {
    Framework.NEXTJS: {
        "name": "sandbox-nextjs",
        "version": "0.1.0",
        "private": True,
        "scripts": {
            "dev": DEV_SCRIPTS[Framework.NEXTJS],
            "build": "next build",
            "start": "next start",
            "lint": "next lint",
        },
        "dependencies": {
            "next": "14.2.5",
            "react": "^18.2.0",
            "react-dom": "^18.2.0",
        },
        "devDependencies": {
            "typescript": "^5.0.0",
            "@types/node": "^20.0.0",
            "@types/react": "^18.2.0",
            "@types/react-dom": "^18.2.0",
            "tailwindcss": "^3.4.0",
            "postcss": "^8.4.0",
            "autoprefixer": "^10.4.0",
        },
    },
    Framework.REACT: {
        "name": "sandbox-react",
        "version": "0.1.0",
        "private": True,
        "type": "module",
        "scripts": {
            "dev": DEV_SCRIPTS[Framework.REACT],
            "build": "vite build",
            "preview": "vite preview",
        },
        "dependencies": {
            "react": "^18.2.0",
            "react-dom": "^18.2.0",
        },
        "devDependencies": {
            "@vitejs/plugin-react": "^4.2.0",
            "vite": "^5.0.0",
        },
    },
    Framework.VUE: {
        "name": "sandbox-vue",
        "version": "0.1.0",
        "private": True,
        "type": "module",
        "scripts": {
            "dev": DEV_SCRIPTS[Framework.VUE],
            "build": "vite build",
            "preview": "vite preview",
        },
        "dependencies": {
            "vue": "^3.4.0",
        },
        "devDependencies": {
            "@vitejs/plugin-vue": "^5.0.0",
            "vite": "^5.0.0",
        },
    },
    Framework.VANILLA: {
        "name": "sandbox-vanilla",
        "version": "0.1.0",
        "private": True,
        "type": "module",
        "scripts": {
            "dev": DEV_SCRIPTS[Framework.VANILLA],
            "build": "vite build",
            "preview": "vite preview",
        },
        "devDependencies": {
            "vite": "^5.0.0",
        },
    },
}

# Environment passed to every preview container
BASE_ENVIRONMENT = {
    "NODE_ENV": "development",
    "HOST": "0.0.0.0",
    "PORT": str(INTERNAL_PORT),
    "BROWSER": "none",  # Don't try to open a browser
    "CI": "true",  # Non-interactive mode
    "CHOKIDAR_USEPOLLING": "true",  # File watching in Docker
}

FRAMEWORK_ENVIRONMENT = {
    Framework.NEXTJS: {
        "NEXT_TELEMETRY_DISABLED": "1",
        "WATCHPACK_POLLING": "true",
    },
}


def package_json(framework: Framework) -> str:
    """Default package.json for a framework."""
    return json.dumps(PACKAGE_TEMPLATES[framework], indent=2) + "\n"


def container_environment(framework: Framework) -> Dict[str, str]:
    """Environment variables for a framework's dev server container."""
    env = dict(BASE_ENVIRONMENT)
    env.update(FRAMEWORK_ENVIRONMENT.get(framework, {}))
    return env


def env_file(framework: Framework) -> str:
    """The .env file written next to the sources (read by Next.js and Vite)."""
    return "".join(f"{key}={value}\n" for key, value in container_environment(framework).items())


def dockerfile(framework: Framework) -> str:
    """Dockerfile that installs dependencies at build time and runs the dev server."""
    env_lines = "\n".join(
        f"ENV {key}={value}" for key, value in container_environment(framework).items()
    )
    return f"""FROM {NODE_IMAGE}

WORKDIR /app

# Install dependencies first so the layer only depends on the manifest
COPY package*.json .npmrc ./
RUN npm install --no-audit --no-fund

COPY . .

{env_lines}

EXPOSE {INTERNAL_PORT}

CMD ["npm", "run", "dev"]
"""


DOCKERIGNORE = """node_modules
.next
dist
.git
.env.local
.env.production
npm-debug.log*
yarn-debug.log*
yarn-error.log*
.DS_Store
*.pem
"""

# No lockfile is generated for sandboxes; installs always resolve fresh
NPMRC = """package-lock=false
audit=false
fund=false
update-notifier=false
loglevel=warn
"""


# =============================================================================
# NEXT.JS
# =============================================================================

NEXT_CONFIG = """/** @type {import('next').NextConfig} */
const nextConfig = {
  reactStrictMode: true,
}

module.exports = nextConfig
"""

TSCONFIG = """{
  "compilerOptions": {
    "target": "es2017",
    "lib": ["dom", "dom.iterable", "esnext"],
    "allowJs": true,
    "skipLibCheck": true,
    "strict": false,
    "noEmit": true,
    "esModuleInterop": true,
    "module": "esnext",
    "moduleResolution": "bundler",
    "resolveJsonModule": true,
    "isolatedModules": true,
    "jsx": "preserve",
    "incremental": true,
    "plugins": [{ "name": "next" }],
    "paths": {
      "@/*": ["./src/*", "./*"]
    }
  },
  "include": ["next-env.d.ts", "**/*.ts", "**/*.tsx", ".next/types/**/*.ts"],
  "exclude": ["node_modules"]
}
"""

NEXT_ENV_DTS = """/// <reference types="next" />
/// <reference types="next/image-types/global" />

// NOTE: This file should not be edited
"""

TAILWIND_CONFIG = """/** @type {import('tailwindcss').Config} */
module.exports = {
  content: [
    './app/**/*.{js,ts,jsx,tsx,mdx}',
    './pages/**/*.{js,ts,jsx,tsx,mdx}',
    './components/**/*.{js,ts,jsx,tsx,mdx}',
    './src/**/*.{js,ts,jsx,tsx,mdx}',
  ],
  theme: {
    extend: {},
  },
  plugins: [],
}
"""

POSTCSS_CONFIG = """module.exports = {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}
"""

GLOBALS_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;

:root {
  --foreground-rgb: 0, 0, 0;
  --background-rgb: 255, 255, 255;
}

body {
  color: rgb(var(--foreground-rgb));
  background: rgb(var(--background-rgb));
}
"""

PLAIN_CSS = """:root {
  font-family: system-ui, -apple-system, sans-serif;
  color: #111827;
  background-color: #f9fafb;
}

body {
  margin: 0;
  min-height: 100vh;
}
"""

LOADING_TSX = """export default function Loading() {
  return (
    <div className="min-h-screen flex items-center justify-center bg-gray-50">
      <p className="text-gray-600">Loading...</p>
    </div>
  )
}
"""

NOT_FOUND_TSX = """import Link from 'next/link'

export default function NotFound() {
  return (
    <div className="min-h-screen flex items-center justify-center bg-gray-50">
      <div className="text-center">
        <h2 className="text-2xl font-bold text-gray-900 mb-4">Not Found</h2>
        <Link href="/" className="text-blue-600 hover:underline">
          Return Home
        </Link>
      </div>
    </div>
  )
}
"""


def layout_component(typescript: bool = True) -> str:
    """Root layout for the Next.js app router."""
    if typescript:
        signature = (
            "export default function RootLayout({ children }: { children: ReactNode }) {"
        )
        type_import = "import type { ReactNode } from 'react'\n"
    else:
        signature = "export default function RootLayout({ children }) {"
        type_import = ""
    return f"""{type_import}import './globals.css'

export const metadata = {{
  title: 'Preview',
  description: 'Generated app preview',
}}

{signature}
  return (
    <html lang="en">
      <body>{{children}}</body>
    </html>
  )
}}
"""


def page_component(name: str = "Page") -> str:
    """Self-contained fallback page."""
    return f"""export default function {name}() {{
  return (
    <main className="min-h-screen flex items-center justify-center bg-gray-50">
      <div className="text-center">
        <h1 className="text-4xl font-bold text-gray-900 mb-4">Your app is almost ready</h1>
        <p className="text-xl text-gray-600">This page is a placeholder while the generated content is regenerated.</p>
      </div>
    </main>
  )
}}
"""


def generic_component(name: str) -> str:
    """Self-contained fallback for any other component file."""
    return f"""export default function {name}() {{
  return (
    <div className="p-4 text-gray-600">
      <p>{name}</p>
    </div>
  )
}}
"""


def error_component(typescript: bool = True) -> str:
    """Route error boundary (Next.js requires it to be a client component)."""
    props = "{ reset }: { error: Error; reset: () => void }" if typescript else "{ reset }"
    return f"""'use client'

export default function ErrorPage({props}) {{
  return (
    <div className="min-h-screen flex items-center justify-center">
      <div className="text-center">
        <h2 className="text-2xl font-bold text-gray-900 mb-4">Something went wrong</h2>
        <button onClick={{() => reset()}} className="px-4 py-2 bg-blue-600 text-white rounded">
          Try again
        </button>
      </div>
    </div>
  )
}}
"""


def global_error_component(typescript: bool = True) -> str:
    """Root error boundary; it replaces the root layout, so it renders html and body."""
    props = (
        "{ error, reset }: { error: Error & { digest?: string }; reset: () => void }"
        if typescript else "{ error, reset }"
    )
    return f"""'use client'

export default function GlobalError({props}) {{
  return (
    <html lang="en">
      <body>
        <div className="min-h-screen flex items-center justify-center bg-gray-50">
          <div className="text-center">
            <h2 className="text-2xl font-bold text-gray-900 mb-4">Something went wrong</h2>
            <p className="text-gray-600 mb-6">{{error.message || 'An unexpected error occurred'}}</p>
            <button onClick={{() => reset()}} className="px-4 py-2 bg-blue-600 text-white rounded">
              Try again
            </button>
          </div>
        </div>
      </body>
    </html>
  )
}}
"""


def fallback_component(path: str) -> str:
    """Pick the fallback component for a path (page, layout or named component)."""
    filename = path.rsplit("/", 1)[-1]
    stem = filename.split(".", 1)[0]
    typescript = filename.endswith((".tsx", ".ts"))
    if stem == "layout":
        return layout_component(typescript)
    if stem == "error":
        return error_component(typescript)
    if stem == "global-error":
        return global_error_component(typescript)
    if stem == "loading":
        return LOADING_TSX
    if stem == "not-found":
        return NOT_FOUND_TSX
    if stem in ("page", "index"):
        return page_component("Page")
    return generic_component(pascal_case(stem))


# =============================================================================
# VITE (REACT / VUE / VANILLA)
# =============================================================================

VITE_CONFIG_REACT = f"""import {{ defineConfig }} from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({{
  plugins: [react()],
  server: {{
    host: '0.0.0.0',
    port: {INTERNAL_PORT},
    strictPort: true,
    watch: {{ usePolling: true }},
  }},
}})
"""

VITE_CONFIG_VUE = f"""import {{ defineConfig }} from 'vite'
import vue from '@vitejs/plugin-vue'

export default defineConfig({{
  plugins: [vue()],
  server: {{
    host: '0.0.0.0',
    port: {INTERNAL_PORT},
    strictPort: true,
    watch: {{ usePolling: true }},
  }},
}})
"""

VITE_CONFIG_PLAIN = f"""import {{ defineConfig }} from 'vite'

export default defineConfig({{
  server: {{
    host: '0.0.0.0',
    port: {INTERNAL_PORT},
    strictPort: true,
    watch: {{ usePolling: true }},
  }},
}})
"""


def index_html(mount_id: str = "app", entry: str = "/main.js") -> str:
    """Minimal HTML document mounting the app on #mount_id."""
    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Preview</title>
  </head>
  <body>
    <div id="{mount_id}"></div>
    <script type="module" src="{entry}"></script>
  </body>
</html>
"""


REACT_MAIN_JSX = """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App'
import './index.css'

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>
)
"""

VUE_MAIN_JS = """import { createApp } from 'vue'
import App from './App.vue'

createApp(App).mount('#app')
"""

VUE_APP = """<template>
  <main class="preview">
    <h1>Your app is almost ready</h1>
    <p>This page is a placeholder while the generated content is regenerated.</p>
  </main>
</template>

<script setup>
</script>

<style scoped>
.preview {
  font-family: system-ui, sans-serif;
  text-align: center;
  padding: 4rem 1rem;
}
</style>
"""

VANILLA_MAIN_JS = """import './style.css'

document.querySelector('#app').innerHTML = `
  <main>
    <h1>Your app is almost ready</h1>
  </main>
`
"""

EMPTY_MODULE = "export {};\n"

EMPTY_CONFIG = "module.exports = {};\n"

# Known config files and the template to fall back to
CONFIG_FALLBACKS = {
    "next.config.js": NEXT_CONFIG,
    "next.config.mjs": "/** @type {import('next').NextConfig} */\nconst nextConfig = {}\n\nexport default nextConfig\n",
    "tailwind.config.js": TAILWIND_CONFIG,
    "postcss.config.js": POSTCSS_CONFIG,
    "vite.config.js": VITE_CONFIG_PLAIN,
    "vite.config.ts": VITE_CONFIG_PLAIN,
}

# Known JSON files and the template to fall back to
JSON_FALLBACKS = {
    "package.json": json.dumps({"name": "sandbox-app", "version": "0.1.0", "private": True}, indent=2) + "\n",
    "tsconfig.json": TSCONFIG,
}


# =============================================================================
# SCAFFOLD SETS
# =============================================================================

def scaffold_files(framework: Framework, app_dir: str = "app") -> Dict[str, str]:
    """
    Default files for a framework, keyed by relative path.

    Args:
        framework: Target framework
        app_dir: Next.js app router directory ("app" or "src/app")

    Returns:
        Mapping of path to content; callers only write the ones that are missing
    """
    files = {
        "package.json": package_json(framework),
        "Dockerfile": dockerfile(framework),
        ".dockerignore": DOCKERIGNORE,
        ".npmrc": NPMRC,
        ".env": env_file(framework),
    }

    if framework == Framework.NEXTJS:
        files.update({
            "next.config.js": NEXT_CONFIG,
            "tsconfig.json": TSCONFIG,
            "next-env.d.ts": NEXT_ENV_DTS,
            "tailwind.config.js": TAILWIND_CONFIG,
            "postcss.config.js": POSTCSS_CONFIG,
            f"{app_dir}/layout.tsx": layout_component(typescript=True),
            f"{app_dir}/globals.css": GLOBALS_CSS,
            f"{app_dir}/page.tsx": page_component(),
            f"{app_dir}/loading.tsx": LOADING_TSX,
            f"{app_dir}/not-found.tsx": NOT_FOUND_TSX,
            f"{app_dir}/error.tsx": error_component(typescript=True),
            f"{app_dir}/global-error.tsx": global_error_component(typescript=True),
        })
    elif framework == Framework.REACT:
        files.update({
            "vite.config.js": VITE_CONFIG_REACT,
            "index.html": index_html("root", "/src/main.jsx"),
            "src/main.jsx": REACT_MAIN_JSX,
            "src/App.jsx": page_component("App"),
            "src/index.css": PLAIN_CSS,
        })
    elif framework == Framework.VUE:
        files.update({
            "vite.config.js": VITE_CONFIG_VUE,
            "index.html": index_html("app", "/src/main.js"),
            "src/main.js": VUE_MAIN_JS,
            "src/App.vue": VUE_APP,
        })
    else:
        files.update({
            "index.html": index_html("app", "/main.js"),
            "main.js": VANILLA_MAIN_JS,
            "style.css": PLAIN_CSS,
        })

    return files
